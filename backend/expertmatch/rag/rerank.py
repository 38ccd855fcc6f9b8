from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from backend.expertmatch.core.errors import QueryValidationError
from backend.expertmatch.models.dto import ExpertProfile

logger = logging.getLogger("expertmatch")

PLACEHOLDER_SCORE = 0.8
MISSING_SCORE = 0.5
MAX_PROFILE_PROJECTS = 3

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

PROMPT_TEMPLATE = """Staffing request:
{query}

Candidates:
{profiles}

Rate every candidate's fit for the request between 0.0 and 1.0.
Return a JSON array ordered best first, one object per candidate:
[{{"id": "<Expert ID>", "score": 0.0, "reason": "<one sentence>"}}]
Use only the Expert IDs listed above."""


def format_profile(expert_id: str, profile: Optional[ExpertProfile]) -> str:
    """Render the candidate block shown to the model."""

    lines = [f"Expert ID: {expert_id}"]
    if profile is None:
        lines.append("Name: Unknown")
        return "\n".join(lines)
    lines.append(f"Name: {profile.name or 'Unknown'}")
    lines.append(f"Seniority: {profile.seniority or 'N/A'}")
    if profile.projects:
        lines.append("Projects:")
        for project in profile.projects[:MAX_PROFILE_PROJECTS]:
            entry = f"  - {project.name}"
            if project.role:
                entry += f" ({project.role})"
            if project.technologies:
                entry += " - Technologies: " + ", ".join(project.technologies)
            lines.append(entry)
    return "\n".join(lines)


def strip_code_fences(text: str) -> str:
    return _FENCE.sub("", text.strip()).strip()


def parse_ranking(text: Optional[str], allowed: Sequence[str]) -> Optional[List[Tuple[str, float]]]:
    """Parse a ``[{id, score, reason}]`` reply into ``(id, score)`` pairs.

    Returns None whenever the reply cannot be trusted: blank, invalid JSON,
    not an array, or mentioning any id outside ``allowed``.
    """

    if not text or not text.strip():
        return None
    try:
        data = json.loads(strip_code_fences(text))
    except ValueError:
        logger.warning("Reranker reply is not valid JSON; keeping original order")
        return None
    if not isinstance(data, list):
        logger.info("Reranker reply is a JSON %s, not an array; keeping original order", type(data).__name__)
        return None

    allowed_ids = set(allowed)
    pairs: List[Tuple[str, float]] = []
    seen = set()
    for item in data:
        if not isinstance(item, dict) or item.get("id") is None:
            continue
        candidate = str(item["id"])
        if candidate not in allowed_ids:
            logger.warning("Reranker returned unknown id %s; discarding the whole reply", candidate)
            return None
        if candidate in seen:
            continue
        seen.add(candidate)
        try:
            score = float(item.get("score", 0.0))
        except (TypeError, ValueError):
            score = 0.0
        pairs.append((candidate, score))
    return pairs


def _unique(ids: Sequence[str]) -> List[str]:
    seen = set()
    return [i for i in ids if not (i in seen or seen.add(i))]


class SemanticReranker:
    """Reorders and scores candidates with a reasoning model, degrading to input order."""

    def __init__(self, model=None, profiles=None) -> None:
        self._model = model
        self._profiles = profiles

    @property
    def configured(self) -> bool:
        return self._model is not None

    def rerank(self, query: str, candidate_ids: Sequence[str], max_results: int) -> List[str]:
        if query is None or not query.strip():
            raise QueryValidationError("Rerank query must not be empty")
        if max_results < 1:
            raise QueryValidationError(f"max_results must be at least 1, got {max_results}")
        ids = _unique(candidate_ids or [])
        if not ids:
            return []
        if self._model is None:
            return ids[:max_results]

        try:
            ranking = self._ask(query, ids)
        except Exception as exc:
            logger.warning("Reranking failed; keeping original order (%s)", exc)
            return ids[:max_results]
        if not ranking:
            return ids[:max_results]

        ordered = [candidate for candidate, _ in sorted(ranking, key=lambda pair: -pair[1])]
        placed = set(ordered)
        ordered.extend(candidate for candidate in ids if candidate not in placed)
        return ordered[:max_results]

    def score_relevance(self, query: str, candidate_ids: Sequence[str]) -> Dict[str, float]:
        """Scores in [0, 1] for exactly the given ids; placeholders when the model is unusable."""

        if query is None or not query.strip():
            raise QueryValidationError("Scoring query must not be empty")
        ids = _unique(candidate_ids or [])
        if not ids:
            return {}
        placeholders = {candidate: PLACEHOLDER_SCORE for candidate in ids}
        if self._model is None:
            return placeholders

        try:
            ranking = self._ask(query, ids)
        except Exception as exc:
            logger.warning("Relevance scoring failed; using placeholder scores (%s)", exc)
            return placeholders
        if ranking is None:
            return placeholders

        scored = {candidate: min(1.0, max(0.0, score)) for candidate, score in ranking}
        return {candidate: scored.get(candidate, MISSING_SCORE) for candidate in ids}

    def build_prompt(self, query: str, ids: Sequence[str]) -> str:
        profiles: Dict[str, ExpertProfile] = {}
        if self._profiles is not None:
            try:
                profiles = self._profiles.load_profiles(list(ids))
            except Exception as exc:
                logger.warning("Profile lookup for reranking failed; sending ids only (%s)", exc)
        blocks = "\n\n".join(format_profile(candidate, profiles.get(candidate)) for candidate in ids)
        return PROMPT_TEMPLATE.format(query=query.strip(), profiles=blocks)

    def _ask(self, query: str, ids: Sequence[str]) -> Optional[List[Tuple[str, float]]]:
        reply = self._model.complete(self.build_prompt(query, ids))
        return parse_ranking(reply, ids)
