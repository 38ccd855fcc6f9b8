from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from backend.expertmatch.core.errors import QueryValidationError, TrigramUnavailableError
from backend.expertmatch.rag.rerank import strip_code_fences

logger = logging.getLogger("expertmatch")

CANDIDATE_POOL_SIZE = 50

NAME_MATCH_PROMPT = """Find the people whose name refers to the same person as "{name}".
Allow typos, nicknames, transliterations and reordered first/last names.

Candidate names:
{candidates}

Return a JSON array with the matching candidate names copied exactly, best match first.
Return [] when nobody matches."""


class LlmNameMatcher:
    """Fuzzy name matching via a reasoning model, used when trigram search is unavailable."""

    def __init__(self, model) -> None:
        self._model = model

    def match(self, name: str, candidates: Dict[str, str], limit: int) -> List[str]:
        """Return ids of candidates the model judges to be ``name``, in candidate order."""

        if not candidates:
            return []
        listing = "\n".join(f"- {candidate}" for candidate in candidates.values())
        try:
            reply = self._model.complete(NAME_MATCH_PROMPT.format(name=name, candidates=listing))
            names = json.loads(strip_code_fences(reply or ""))
        except Exception as exc:
            logger.warning("LLM name matching failed for '%s' (%s)", name, exc)
            return []
        if not isinstance(names, list):
            return []

        wanted = {entry.strip().lower() for entry in names if isinstance(entry, str)}
        matched = [expert_id for expert_id, candidate in candidates.items() if candidate.strip().lower() in wanted]
        return matched[:limit]


class PersonNameSearch:
    """Exact/partial name lookup with trigram and LLM-assisted fuzzy fallbacks."""

    def __init__(self, repository, name_matcher: Optional[LlmNameMatcher] = None) -> None:
        self._repository = repository
        self._name_matcher = name_matcher

    def find_by_name(self, name: str, limit: int) -> List[str]:
        cleaned = self._validate(name, limit)
        return self._repository.find_ids_by_name(cleaned, limit)

    def find_by_similarity(self, name: str, threshold: float, limit: int) -> List[str]:
        cleaned = self._validate(name, limit)
        try:
            return self._repository.find_ids_by_similarity(cleaned, threshold, limit)
        except TrigramUnavailableError:
            if self._name_matcher is None:
                logger.info("pg_trgm unavailable and no reasoning model configured; no fuzzy match for '%s'", cleaned)
                return []
            logger.info("pg_trgm unavailable, using LLM name matching for '%s'", cleaned)
            candidates = self._repository.find_candidate_names(cleaned, CANDIDATE_POOL_SIZE)
            return self._name_matcher.match(cleaned, candidates, limit)

    @staticmethod
    def _validate(name: str, limit: int) -> str:
        if name is None or not name.strip():
            raise QueryValidationError("Person name must not be empty")
        if limit < 1:
            raise QueryValidationError(f"limit must be at least 1, got {limit}")
        return name.strip()
