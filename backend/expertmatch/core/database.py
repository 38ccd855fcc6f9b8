"""SQLAlchemy engine construction and PostgreSQL error classification."""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

TRANSACTION_ABORTED = "25P02"
UNDEFINED_FUNCTION = "42883"
DEFAULT_CHANNEL_TIMEOUT_SEC = 10.0


def statement_timeout_ms(settings) -> int:
    """Server-side statement timeout matching the per-channel retrieval budget."""

    seconds = float(getattr(settings, "channel_timeout_sec", DEFAULT_CHANNEL_TIMEOUT_SEC) or DEFAULT_CHANNEL_TIMEOUT_SEC)
    return max(1, int(seconds * 1000))


def build_engine(settings) -> Optional[Engine]:
    """Create a pooled engine for DATABASE_URL, or None when no database is configured."""

    url = getattr(settings, "database_url", None)
    if not url:
        return None
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://"):]
    timeout_ms = statement_timeout_ms(settings)
    engine = create_engine(
        url,
        pool_size=getattr(settings, "db_pool_size", 5),
        pool_pre_ping=True,
        connect_args={"options": f"-c statement_timeout={timeout_ms}"},
    )
    logger.info(
        "Database engine created for %s (statement_timeout=%d ms)",
        engine.url.render_as_string(hide_password=True),
        timeout_ms,
    )
    return engine


def _error_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException) and id(orig) not in seen:
            current = orig
            continue
        current = current.__cause__ or current.__context__


def sqlstate(exc: BaseException) -> Optional[str]:
    """Return the first SQLSTATE found on the exception or its causes."""

    for err in _error_chain(exc):
        for attr in ("sqlstate", "pgcode"):
            code = getattr(err, attr, None)
            if isinstance(code, str) and code:
                return code
    return None


def is_transaction_aborted(exc: BaseException) -> bool:
    """True when the backend reported 'current transaction is aborted'."""

    if sqlstate(exc) == TRANSACTION_ABORTED:
        return True
    return any("current transaction is aborted" in str(err) for err in _error_chain(exc))


def is_missing_trigram(exc: BaseException) -> bool:
    """True when pg_trgm similarity functions are not installed."""

    if sqlstate(exc) == UNDEFINED_FUNCTION:
        return True
    markers = ("function similarity", "function word_similarity", "pg_trgm")
    return any(marker in str(err) for err in _error_chain(exc) for marker in markers)
