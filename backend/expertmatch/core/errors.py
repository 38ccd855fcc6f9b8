"""Error taxonomy shared by the retrieval stores and services."""

from __future__ import annotations

from typing import Optional


class ExpertMatchError(Exception):
    """Base class for errors raised by the retrieval core."""


class QueryValidationError(ExpertMatchError, ValueError):
    """Raised when caller input is unusable (blank query, non-positive limits, bad params)."""


class RetrievalError(ExpertMatchError, RuntimeError):
    """Hard backend failure carrying the failing operation for diagnostics."""

    def __init__(self, error_code: str, message: str, query: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.query = query

    def __str__(self) -> str:
        base = super().__str__()
        return f"[{self.error_code}] {base}"


class TrigramUnavailableError(RetrievalError):
    """The pg_trgm similarity functions are not installed in the database."""

    def __init__(self, message: str = "pg_trgm extension is not available") -> None:
        super().__init__("TRIGRAM_UNAVAILABLE", message)
