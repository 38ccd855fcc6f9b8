from __future__ import annotations

import difflib
import json
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

from backend.expertmatch.core.database import is_missing_trigram, is_transaction_aborted
from backend.expertmatch.core.errors import QueryValidationError, RetrievalError, TrigramUnavailableError
from backend.expertmatch.models.dto import ExpertProfile, ExpertRecord, ProjectSummary, WorkExperienceRecord

logger = logging.getLogger(__name__)

_SCHEMA_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PROFILE_PROJECT_LIMIT = 3


def _like_pattern(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def name_parts(name: str) -> List[str]:
    """Full name plus first and last token, deduplicated, in that order."""

    cleaned = " ".join(name.split())
    tokens = cleaned.split(" ") if cleaned else []
    parts = [cleaned]
    if len(tokens) > 1:
        parts.extend([tokens[0], tokens[-1]])
    result: List[str] = []
    for part in parts:
        if part and part.lower() not in {p.lower() for p in result}:
            result.append(part)
    return result


class ExpertRepository:
    """Read access to employees and their work experience in PostgreSQL."""

    def __init__(self, engine: Engine, schema: str = "expertmatch") -> None:
        if not _SCHEMA_NAME.match(schema or ""):
            raise QueryValidationError(f"Invalid schema name: {schema!r}")
        self._engine = engine
        self._schema = schema

    def find_ids_by_name(self, name: str, limit: int) -> List[str]:
        """Case-insensitive partial match on the employee name."""

        sql = (
            f"SELECT id FROM {self._schema}.employee "
            "WHERE name ILIKE :pattern ESCAPE '\\' ORDER BY name LIMIT :limit"
        )
        return self._fetch_ids(sql, {"pattern": _like_pattern(name), "limit": limit}, "NAME_SEARCH_ERROR")

    def find_ids_by_similarity(self, name: str, threshold: float, limit: int) -> List[str]:
        """Trigram similarity match, best first. Raises TrigramUnavailableError without pg_trgm."""

        sql = (
            f"SELECT id FROM {self._schema}.employee "
            "WHERE similarity(name, :name) >= :threshold "
            "ORDER BY similarity(name, :name) DESC, name LIMIT :limit"
        )
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text(sql), {"name": name, "threshold": threshold, "limit": limit}).all()
        except Exception as exc:
            if is_missing_trigram(exc):
                raise TrigramUnavailableError(f"pg_trgm unavailable for name similarity search: {exc}") from exc
            if is_transaction_aborted(exc):
                logger.warning("Name similarity search skipped, transaction aborted (%s)", exc)
                return []
            raise RetrievalError("NAME_SIMILARITY_ERROR", f"Name similarity search failed: {exc}") from exc
        return [str(row[0]) for row in rows]

    def find_candidate_names(self, name: str, limit: int) -> Dict[str, str]:
        """Employees whose name contains the full name, the first token, or the last token."""

        patterns = [_like_pattern(part) for part in name_parts(name)]
        if not patterns:
            return {}
        sql = (
            f"SELECT id, name FROM {self._schema}.employee "
            "WHERE name ILIKE ANY (CAST(:patterns AS text[])) ORDER BY name LIMIT :limit"
        )
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text(sql), {"patterns": patterns, "limit": limit}).all()
        except Exception as exc:
            if is_transaction_aborted(exc):
                logger.warning("Candidate name lookup skipped, transaction aborted (%s)", exc)
                return {}
            raise RetrievalError("NAME_CANDIDATE_ERROR", f"Candidate name lookup failed: {exc}") from exc
        return {str(row[0]): str(row[1]) for row in rows}

    def load_profiles(self, ids: Sequence[str]) -> Dict[str, ExpertProfile]:
        """Profiles with up to three projects each, keyed by expert id."""

        if not ids:
            return {}
        people_sql = (
            f"SELECT id, name, email, seniority FROM {self._schema}.employee "
            "WHERE id = ANY (CAST(:ids AS text[]))"
        )
        work_sql = (
            f"SELECT employee_id, project_name, role, technologies FROM {self._schema}.work_experience "
            "WHERE employee_id = ANY (CAST(:ids AS text[])) ORDER BY employee_id, start_date DESC NULLS LAST"
        )
        with self._engine.connect() as conn:
            people = conn.execute(text(people_sql), {"ids": list(ids)}).mappings().all()
            work = conn.execute(text(work_sql), {"ids": list(ids)}).mappings().all()

        profiles = {
            str(row["id"]): ExpertProfile(
                id=str(row["id"]),
                name=row["name"],
                email=row["email"],
                seniority=row["seniority"],
            )
            for row in people
        }
        for row in work:
            profile = profiles.get(str(row["employee_id"]))
            if profile is None or len(profile.projects) >= PROFILE_PROJECT_LIMIT:
                continue
            profile.projects.append(
                ProjectSummary(
                    name=row["project_name"],
                    role=row["role"],
                    technologies=list(row["technologies"] or []),
                )
            )
        return profiles

    def list_experts(self) -> List[ExpertRecord]:
        sql = f"SELECT id, name, email, seniority FROM {self._schema}.employee ORDER BY id"
        with self._engine.connect() as conn:
            rows = conn.execute(text(sql)).mappings().all()
        return [ExpertRecord(id=str(row["id"]), name=row["name"], email=row["email"], seniority=row["seniority"]) for row in rows]

    def list_work_experience(self) -> List[WorkExperienceRecord]:
        sql = (
            "SELECT employee_id, project_id, project_name, project_type, role, technologies, "
            "industry, customer_id, customer_name, project_summary "
            f"FROM {self._schema}.work_experience ORDER BY employee_id, project_name"
        )
        with self._engine.connect() as conn:
            rows = conn.execute(text(sql)).mappings().all()
        return [
            WorkExperienceRecord(
                employee_id=str(row["employee_id"]),
                project_id=row["project_id"],
                project_name=row["project_name"],
                project_type=row["project_type"],
                role=row["role"],
                technologies=list(row["technologies"] or []),
                industry=row["industry"],
                customer_id=row["customer_id"],
                customer_name=row["customer_name"],
                summary=row["project_summary"],
            )
            for row in rows
        ]

    def _fetch_ids(self, sql: str, params: Dict[str, object], error_code: str) -> List[str]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text(sql), params).all()
        except Exception as exc:
            if is_transaction_aborted(exc):
                logger.warning("Expert lookup skipped, transaction aborted (%s)", exc)
                return []
            raise RetrievalError(error_code, f"Expert lookup failed: {exc}") from exc
        return [str(row[0]) for row in rows]


class InMemoryExpertRepository:
    """Dictionary-backed expert directory used without a database and in tests."""

    def __init__(
        self,
        experts: Optional[Iterable[ExpertRecord]] = None,
        work_experience: Optional[Iterable[WorkExperienceRecord]] = None,
    ) -> None:
        self.experts: Dict[str, ExpertRecord] = {expert.id: expert for expert in experts or []}
        self.work_experience: List[WorkExperienceRecord] = list(work_experience or [])

    @classmethod
    def from_seed(cls, path: Path) -> "InMemoryExpertRepository":
        """Load ``{"experts": [...], "work_experience": [...]}`` from a JSON file."""

        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(
            experts=[ExpertRecord.model_validate(item) for item in data.get("experts", [])],
            work_experience=[WorkExperienceRecord.model_validate(item) for item in data.get("work_experience", [])],
        )

    def find_ids_by_name(self, name: str, limit: int) -> List[str]:
        needle = name.lower()
        matches = sorted(
            (expert for expert in self.experts.values() if needle in expert.name.lower()),
            key=lambda expert: expert.name,
        )
        return [expert.id for expert in matches][:limit]

    def find_ids_by_similarity(self, name: str, threshold: float, limit: int) -> List[str]:
        """Approximates trigram similarity with difflib ratios over the name and its tokens."""

        needle = name.lower()
        scored = []
        for expert in self.experts.values():
            candidates = [expert.name.lower()] + expert.name.lower().split()
            score = max(difflib.SequenceMatcher(None, needle, candidate).ratio() for candidate in candidates)
            if score >= threshold:
                scored.append((score, expert.name, expert.id))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [expert_id for _, _, expert_id in scored][:limit]

    def find_candidate_names(self, name: str, limit: int) -> Dict[str, str]:
        parts = [part.lower() for part in name_parts(name)]
        matches = sorted(
            (expert for expert in self.experts.values() if any(part in expert.name.lower() for part in parts)),
            key=lambda expert: expert.name,
        )
        return {expert.id: expert.name for expert in matches[:limit]}

    def load_profiles(self, ids: Sequence[str]) -> Dict[str, ExpertProfile]:
        profiles: Dict[str, ExpertProfile] = {}
        for expert_id in ids:
            expert = self.experts.get(expert_id)
            if expert is None:
                continue
            projects = [
                ProjectSummary(name=item.project_name, role=item.role, technologies=list(item.technologies))
                for item in self.work_experience
                if item.employee_id == expert_id
            ]
            profiles[expert_id] = ExpertProfile(
                id=expert.id,
                name=expert.name,
                email=expert.email,
                seniority=expert.seniority,
                projects=projects[:PROFILE_PROJECT_LIMIT],
            )
        return profiles

    def list_experts(self) -> List[ExpertRecord]:
        return sorted(self.experts.values(), key=lambda expert: expert.id)

    def list_work_experience(self) -> List[WorkExperienceRecord]:
        return list(self.work_experience)
