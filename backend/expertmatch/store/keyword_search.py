from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

from backend.expertmatch.core.database import is_transaction_aborted
from backend.expertmatch.core.errors import QueryValidationError, RetrievalError
from backend.expertmatch.models.dto import WorkExperienceRecord

logger = logging.getLogger("expertmatch")

_SCHEMA_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TOKEN = re.compile(r"[a-z0-9][a-z0-9+#.\-]*")

_DOCUMENT = (
    "to_tsvector('english', coalesce(project_name, '') || ' ' || coalesce(project_summary, '') || ' ' || "
    "coalesce(role, '') || ' ' || coalesce(array_to_string(technologies, ' '), ''))"
)


def _validate(terms: Sequence[str], limit: int) -> List[str]:
    cleaned = [term.strip() for term in terms or [] if term and term.strip()]
    if not cleaned:
        raise QueryValidationError("Keywords must not be empty")
    if limit < 1:
        raise QueryValidationError(f"limit must be at least 1, got {limit}")
    return cleaned


class KeywordSearch:
    """PostgreSQL full-text search over work experience, ranked per employee."""

    def __init__(self, engine: Engine, schema: str = "expertmatch") -> None:
        if not _SCHEMA_NAME.match(schema or ""):
            raise QueryValidationError(f"Invalid schema name: {schema!r}")
        self._engine = engine
        self._schema = schema

    def search_by_keywords(self, terms: Sequence[str], limit: int) -> List[str]:
        """Employees whose work experience matches all terms (plainto_tsquery), best rank first."""

        cleaned = _validate(terms, limit)
        sql = (
            f"SELECT employee_id, MAX(ts_rank({_DOCUMENT}, plainto_tsquery('english', :terms))) AS rank "
            f"FROM {self._schema}.work_experience "
            f"WHERE {_DOCUMENT} @@ plainto_tsquery('english', :terms) "
            "GROUP BY employee_id ORDER BY rank DESC, employee_id LIMIT :limit"
        )
        return self._query(sql, {"terms": " ".join(cleaned), "limit": limit}, "Keyword search")

    def search_by_technologies(self, technologies: Sequence[str], limit: int) -> List[str]:
        """Employees with an exact technology match, most matching projects first."""

        cleaned = _validate(technologies, limit)
        sql = (
            "SELECT employee_id, COUNT(*) AS hits "
            f"FROM {self._schema}.work_experience "
            "WHERE technologies && CAST(:technologies AS text[]) "
            "GROUP BY employee_id ORDER BY hits DESC, employee_id LIMIT :limit"
        )
        return self._query(sql, {"technologies": cleaned, "limit": limit}, "Technology search")

    def _query(self, sql: str, params: Dict[str, object], label: str) -> List[str]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text(sql), params).all()
        except Exception as exc:
            if is_transaction_aborted(exc):
                logger.warning("%s skipped, transaction aborted (%s)", label, exc)
                return []
            raise RetrievalError("KEYWORD_SEARCH_ERROR", f"{label} failed: {exc}", query=sql) from exc
        return [str(row[0]) for row in rows]


def _tokens(value: str) -> List[str]:
    return _TOKEN.findall(value.lower())


class InMemoryKeywordSearch:
    """Term-overlap ranking used when no database is configured."""

    def __init__(self, records: Iterable[WorkExperienceRecord] = ()) -> None:
        self._records = list(records)

    def search_by_keywords(self, terms: Sequence[str], limit: int) -> List[str]:
        cleaned = _validate(terms, limit)
        wanted = {token for term in cleaned for token in _tokens(term)}
        scores: Dict[str, int] = {}
        for record in self._records:
            document = " ".join(
                [record.project_name, record.summary or "", record.role or "", " ".join(record.technologies)]
            )
            hits = len(wanted & set(_tokens(document)))
            if hits:
                scores[record.employee_id] = max(scores.get(record.employee_id, 0), hits)
        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return [employee_id for employee_id, _ in ranked][:limit]

    def search_by_technologies(self, technologies: Sequence[str], limit: int) -> List[str]:
        cleaned = {term.lower() for term in _validate(technologies, limit)}
        hits: Dict[str, int] = {}
        for record in self._records:
            if cleaned & {tech.lower() for tech in record.technologies}:
                hits[record.employee_id] = hits.get(record.employee_id, 0) + 1
        ranked = sorted(hits.items(), key=lambda item: (-item[1], item[0]))
        return [employee_id for employee_id, _ in ranked][:limit]
