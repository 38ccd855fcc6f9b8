from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from backend.expertmatch.core.errors import QueryValidationError
from backend.expertmatch.models.dto import (
    CHANNELS,
    ExtractedEntities,
    ParsedQuery,
    RetrievalRequest,
    RetrievalResult,
)
from backend.expertmatch.rag.fusion import ResultFusionService
from backend.expertmatch.rag.planner import ChannelPlanner
from backend.expertmatch.rag.rerank import PLACEHOLDER_SCORE

logger = logging.getLogger("expertmatch")

VECTOR_SIMILARITY_FLOOR = 0.7
NAME_SIMILARITY_THRESHOLD = 0.3

ChannelTask = Callable[[], List[str]]


def _distinct(values: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


@dataclass
class HybridRetriever:
    """Runs the vector, graph, keyword and person channels, fuses them and optionally reranks."""

    settings: object
    vector_search: object
    graph_search: object
    keyword_search: object
    person_search: object
    reranker: object
    fusion: ResultFusionService = field(default_factory=ResultFusionService)
    planner: ChannelPlanner = field(default_factory=ChannelPlanner)

    def retrieve(
        self,
        request: RetrievalRequest,
        parsed: ParsedQuery,
        entities: Optional[ExtractedEntities] = None,
    ) -> RetrievalResult:
        query = request.query
        max_results = request.options.max_results
        if query is None or not query.strip():
            raise QueryValidationError("Query must not be empty")
        if max_results < 1:
            raise QueryValidationError(f"max_results must be at least 1, got {max_results}")
        entities = entities or ExtractedEntities()

        started = time.perf_counter()
        channel_results = self._run_channels(self._channel_tasks(parsed, entities, max_results))
        weights = self.planner.weights(parsed, entities)
        fused = self.fusion.fuse(channel_results, weights)

        rerank_enabled = bool(request.options.rerank and fused)
        if rerank_enabled:
            final_ids = self.reranker.rerank(query, fused, max_results)
            if not final_ids:
                logger.warning("Reranker returned nothing for %d candidates; using fused order", len(fused))
                final_ids = fused[:max_results]
            scores = self._reconcile(final_ids, self.reranker.score_relevance(query, final_ids))
        else:
            final_ids = fused[:max_results]
            scores = {expert_id: PLACEHOLDER_SCORE for expert_id in final_ids}
        reranked = rerank_enabled and bool(getattr(self.reranker, "configured", True))

        logger.info(
            "Retrieved %d experts (vector=%d graph=%d keyword=%d person=%d, weights=%s, reranked=%s) in %d ms",
            len(final_ids),
            len(channel_results["vector"]),
            len(channel_results["graph"]),
            len(channel_results["keyword"]),
            len(channel_results["person"]),
            weights,
            reranked,
            int((time.perf_counter() - started) * 1000),
        )
        return RetrievalResult(expert_ids=final_ids, relevance_scores=scores, reranked=reranked, weights=weights)

    def _channel_tasks(self, parsed: ParsedQuery, entities: ExtractedEntities, max_results: int) -> Dict[str, ChannelTask]:
        tasks: Dict[str, ChannelTask] = {
            "vector": lambda: self.vector_channel(parsed.original_query, max_results),
            "graph": lambda: self.graph_channel(parsed, entities, max_results),
        }
        if parsed.skills or parsed.technologies:
            tasks["keyword"] = lambda: self.keyword_channel(parsed, max_results)
        if entities.persons:
            tasks["person"] = lambda: self.person_channel(entities, max_results)
        return tasks

    def vector_channel(self, text: str, max_results: int) -> List[str]:
        threshold = getattr(self.settings, "vector_similarity_threshold", VECTOR_SIMILARITY_FLOOR)
        hits = self.vector_search.search_by_text(text, max_results, threshold)
        ids = []
        for hit in hits:
            metadata = hit.get("metadata") or {}
            ids.append(metadata.get("employee_id") or hit.get("id"))
        return _distinct(str(value) for value in ids if value)

    def keyword_channel(self, parsed: ParsedQuery, max_results: int) -> List[str]:
        """Full-text matches on skills and technologies, then exact technology matches."""

        found: List[str] = []
        keywords = _distinct(list(parsed.skills) + list(parsed.technologies))
        if keywords:
            found.extend(self.keyword_search.search_by_keywords(keywords, max_results))
        technologies = _distinct(parsed.technologies)
        if technologies:
            found.extend(self.keyword_search.search_by_technologies(technologies, max_results))
        return _distinct(found)[:max_results]

    def graph_channel(self, parsed: ParsedQuery, entities: ExtractedEntities, max_results: int) -> List[str]:
        """Technology AND-match, per-skill and per-domain lookups, unioned in that order."""

        found: List[str] = []
        technologies = _distinct(parsed.technologies)
        if len(technologies) == 1:
            found.extend(self.graph_search.find_experts_by_technology(technologies[0]))
        elif len(technologies) > 1:
            found.extend(self.graph_search.find_experts_by_technologies(technologies))
        for skill in _distinct(parsed.skills):
            found.extend(self.graph_search.find_experts_by_technology(skill))
        for domain in entities.domains:
            found.extend(self.graph_search.find_experts_by_domain(domain.name))
        return _distinct(found)[:max_results]

    def person_channel(self, entities: ExtractedEntities, max_results: int) -> List[str]:
        threshold = getattr(self.settings, "name_similarity_threshold", NAME_SIMILARITY_THRESHOLD)
        found: List[str] = []
        for person in entities.persons:
            if not person.name or not person.name.strip():
                continue
            hits = self.person_search.find_by_name(person.name, max_results)
            if not hits:
                hits = self.person_search.find_by_similarity(person.name, threshold, max_results)
            found.extend(hits)
        return _distinct(found)

    def _run_channels(self, tasks: Dict[str, ChannelTask]) -> Dict[str, List[str]]:
        results: Dict[str, List[str]] = {channel: [] for channel in CHANNELS}
        if not getattr(self.settings, "parallel_channels", False):
            for name, task in tasks.items():
                results[name] = self._isolated(name, task)
            return results

        timeout = float(getattr(self.settings, "channel_timeout_sec", 10.0))
        pool = ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="retrieval-channel")
        try:
            futures = {name: pool.submit(self._isolated, name, task) for name, task in tasks.items()}
            deadline = time.monotonic() + timeout
            for name, future in futures.items():
                try:
                    results[name] = future.result(timeout=max(0.0, deadline - time.monotonic()))
                except FutureTimeout:
                    future.cancel()
                    logger.warning("%s channel exceeded %.1fs; continuing without it", name, timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    @staticmethod
    def _isolated(name: str, task: ChannelTask) -> List[str]:
        try:
            return list(task() or [])
        except Exception as exc:
            logger.warning("%s channel failed; continuing without it (%s)", name, exc)
            return []

    @staticmethod
    def _reconcile(ids: List[str], scores: Dict[str, float]) -> Dict[str, float]:
        return {expert_id: float(scores.get(expert_id, PLACEHOLDER_SCORE)) for expert_id in ids}
