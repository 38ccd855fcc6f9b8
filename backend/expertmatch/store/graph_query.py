"""Execute parameterized Cypher against Apache AGE through plain SQL.

AGE has no Python driver of its own: a Cypher query is wrapped in
``ag_catalog.cypher(graph, $$query$$)`` and the caller has to declare the
result columns up front. Parameters cannot be bound, so they are embedded as
Cypher literals by ``embed_parameters``, which is the only place that escapes
user-controlled values.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from backend.expertmatch.core.database import is_transaction_aborted
from backend.expertmatch.core.errors import QueryValidationError, RetrievalError

logger = logging.getLogger(__name__)

GraphRow = Dict[str, Any]

_IDENT_START = re.compile(r"[A-Za-z_]")
_IDENT_CHAR = re.compile(r"[A-Za-z0-9_]")
_GRAPH_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_AGTYPE_SUFFIX = re.compile(r"::(?:vertex|edge|path)\b")
_QUOTES = ("'", '"', "`")
_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLAUSE_END = ("ORDER", "SKIP", "LIMIT", "UNION")
_DOLLAR_TAG = "cypher_q"


def escape_string(value: str) -> str:
    """Quote a string as a Cypher literal, neutralising quotes and control characters."""

    escaped = (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f"'{escaped}'"


def format_literal(value: Any) -> str:
    """Render a Python value as a Cypher literal."""

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise QueryValidationError(f"Cannot embed non-finite number {value!r} in a Cypher query")
        return repr(value)
    if isinstance(value, str):
        return escape_string(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(format_literal(item) for item in value) + "]"
    if isinstance(value, Mapping):
        entries = []
        for key, item in value.items():
            if not isinstance(key, str) or not _GRAPH_NAME.match(key):
                raise QueryValidationError(f"Invalid Cypher map key: {key!r}")
            entries.append(f"{key}: {format_literal(item)}")
        return "{" + ", ".join(entries) + "}"
    raise QueryValidationError(f"Unsupported Cypher parameter type: {type(value).__name__}")


def _is_ident(char: str) -> bool:
    return bool(_IDENT_CHAR.match(char))


def _skip_quoted(query: str, start: int) -> int:
    """Return the index just past the quoted literal opening at ``start``."""

    quote = query[start]
    i = start + 1
    while i < len(query):
        char = query[i]
        if char == "\\" and quote != "`":
            i += 2
            continue
        if char == quote:
            return i + 1
        i += 1
    return len(query)


def embed_parameters(query: str, params: Mapping[str, Any]) -> str:
    """Replace every ``$name`` placeholder outside quoted text with a literal.

    Placeholders match whole identifiers only, so ``$tech`` never touches
    ``$techCount``. A placeholder without a value fails fast.
    """

    out: List[str] = []
    i = 0
    length = len(query)
    while i < length:
        char = query[i]
        if char in _QUOTES:
            end = _skip_quoted(query, i)
            out.append(query[i:end])
            i = end
            continue
        if char == "$" and i + 1 < length and _IDENT_START.match(query[i + 1]):
            j = i + 1
            while j < length and _is_ident(query[j]):
                j += 1
            name = query[i + 1:j]
            if name not in params:
                raise QueryValidationError(f"Missing value for Cypher parameter ${name}")
            out.append(format_literal(params[name]))
            i = j
            continue
        out.append(char)
        i += 1
    return "".join(out)


def _keyword_at(query: str, index: int, keyword: str) -> bool:
    end = index + len(keyword)
    if query[index:end].upper() != keyword:
        return False
    if index > 0 and (_is_ident(query[index - 1]) or query[index - 1] == "."):
        return False
    if end < len(query) and _is_ident(query[end]):
        return False
    return True


def _find_return_clause(query: str) -> Optional[int]:
    """Index just past the last top-level RETURN keyword, or None."""

    position = None
    i = 0
    while i < len(query):
        char = query[i]
        if char in _QUOTES:
            i = _skip_quoted(query, i)
            continue
        if char in "rR" and _keyword_at(query, i, "RETURN"):
            position = i + len("RETURN")
            i = position
            continue
        i += 1
    return position


def infer_return_columns(query: str) -> List[str]:
    """Derive the AGE column list from the RETURN clause.

    Commas are counted only at nesting depth zero and outside quoted
    literals, stopping at ORDER BY / SKIP / LIMIT / UNION.
    """

    start = _find_return_clause(query)
    if start is None:
        return ["result"]

    commas = 0
    stack: List[str] = []
    i = start
    while i < len(query):
        char = query[i]
        if char in _QUOTES:
            i = _skip_quoted(query, i)
            continue
        if char in _OPENERS:
            stack.append(_OPENERS[char])
        elif stack and char == stack[-1]:
            stack.pop()
        elif not stack:
            if char == ",":
                commas += 1
            elif char.isalpha() and any(_keyword_at(query, i, kw) for kw in _CLAUSE_END):
                break
        i += 1

    if commas == 0:
        return ["result"]
    return [f"c{idx}" for idx in range(commas + 1)]


def build_sql(graph_name: str, cypher: str, columns: Sequence[str]) -> str:
    """Wrap a fully embedded Cypher string in the ag_catalog.cypher() call."""

    if not _GRAPH_NAME.match(graph_name or ""):
        raise QueryValidationError(f"Invalid graph name: {graph_name!r}")
    tag = _DOLLAR_TAG
    suffix = 0
    while f"${tag}$" in cypher:
        suffix += 1
        tag = f"{_DOLLAR_TAG}{suffix}"
    column_defs = ", ".join(f"{column} ag_catalog.agtype" for column in columns)
    return (
        f"SELECT * FROM ag_catalog.cypher('{graph_name}'::name, "
        f"${tag}${cypher}${tag}$::cstring) AS t({column_defs})"
    )


def decode_agtype(value: Any) -> Any:
    """Turn an agtype text value into Python data where possible."""

    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        pass
    stripped = _AGTYPE_SUFFIX.sub("", value)
    try:
        return json.loads(stripped)
    except ValueError:
        return value


class GraphQueryAdapter:
    """Runs Cypher pattern queries against a named AGE graph."""

    def __init__(
        self,
        engine: Engine,
        graph_name: str = "expertmatch_graph",
        schema: str = "expertmatch",
        statement_timeout_ms: Optional[int] = None,
    ) -> None:
        if not _GRAPH_NAME.match(graph_name or ""):
            raise QueryValidationError(f"Invalid graph name: {graph_name!r}")
        if not _GRAPH_NAME.match(schema or ""):
            raise QueryValidationError(f"Invalid schema name: {schema!r}")
        self._engine = engine
        self.graph_name = graph_name
        self.schema = schema
        self.statement_timeout_ms = int(statement_timeout_ms) if statement_timeout_ms else None

    def execute(self, cypher: str, params: Optional[Mapping[str, Any]]) -> List[GraphRow]:
        """Run a read query; a transaction-aborted backend yields an empty result."""

        return self._run(cypher, params, suppress_transient=True)

    def execute_write(self, cypher: str, params: Optional[Mapping[str, Any]]) -> List[GraphRow]:
        """Run a mutating query in its own committed transaction; every failure raises."""

        return self._run(cypher, params, suppress_transient=False)

    def execute_and_extract(self, cypher: str, params: Optional[Mapping[str, Any]], field: str) -> List[str]:
        """Return distinct, non-null string values of one result column, in row order.

        Single-column queries come back under ``result`` whatever the RETURN
        alias was, so that column stands in for ``field``.
        """

        values: List[str] = []
        seen = set()
        for row in self.execute(cypher, params):
            value = row.get(field)
            if value is None and len(row) == 1:
                value = next(iter(row.values()))
                if isinstance(value, dict):
                    value = value.get(field)
            if value is None:
                continue
            if not isinstance(value, str):
                value = str(value)
            if value not in seen:
                seen.add(value)
                values.append(value)
        return values

    def graph_exists(self) -> bool:
        """True when the graph is registered in ag_catalog; any error means False."""

        try:
            with self._engine.connect() as conn:
                self._load_extension(conn)
                count = conn.execute(
                    text("SELECT count(*) FROM ag_catalog.ag_graph WHERE name = CAST(:name AS name)"),
                    {"name": self.graph_name},
                ).scalar()
            return bool(count)
        except Exception as exc:
            logger.debug("Graph existence check failed for %s (%s)", self.graph_name, exc)
            return False

    def create_graph(self) -> bool:
        """Create the graph when missing; returns True if it was created."""

        if self.graph_exists():
            return False
        try:
            with self._engine.begin() as conn:
                self._prepare(conn)
                conn.execute(text("SELECT ag_catalog.create_graph(CAST(:name AS name))"), {"name": self.graph_name})
        except Exception as exc:
            raise RetrievalError("GRAPH_CREATE_ERROR", f"Failed to create graph {self.graph_name}: {exc}") from exc
        logger.info("Created graph %s", self.graph_name)
        return True

    def _run(self, cypher: str, params: Optional[Mapping[str, Any]], suppress_transient: bool) -> List[GraphRow]:
        if cypher is None or not cypher.strip():
            raise QueryValidationError("Cypher query must not be empty")
        if params is None:
            raise QueryValidationError("Cypher parameters must not be None; pass an empty mapping")

        embedded = embed_parameters(cypher, params)
        columns = infer_return_columns(embedded)
        sql = build_sql(self.graph_name, embedded, columns)

        try:
            with self._engine.begin() as conn:
                # reads are bounded by the channel budget; bulk writes are not
                self._prepare(conn, self.statement_timeout_ms if suppress_transient else 0)
                result = conn.exec_driver_sql(sql, execution_options={"no_parameters": True})
                return [self._decode_row(row, columns) for row in result]
        except Exception as exc:
            if suppress_transient and is_transaction_aborted(exc):
                logger.warning("Cypher query skipped, transaction aborted (%s): %s", exc, cypher)
                return []
            raise RetrievalError(
                "GRAPH_QUERY_ERROR",
                f"Failed to execute Cypher query: {exc}",
                query=cypher,
            ) from exc

    def _prepare(self, conn: Connection, timeout_ms: Optional[int] = None) -> None:
        self._load_extension(conn)
        conn.exec_driver_sql(
            f'SET LOCAL search_path = ag_catalog, "$user", public, {self.schema}',
            execution_options={"no_parameters": True},
        )
        if timeout_ms is not None:
            conn.exec_driver_sql(
                f"SET LOCAL statement_timeout = {int(timeout_ms)}",
                execution_options={"no_parameters": True},
            )

    def _load_extension(self, conn: Connection) -> None:
        try:
            with conn.begin_nested():
                conn.exec_driver_sql("LOAD 'age'", execution_options={"no_parameters": True})
        except Exception as exc:
            logger.debug("LOAD 'age' failed, assuming it is preloaded (%s)", exc)

    @staticmethod
    def _decode_row(row: Any, columns: Sequence[str]) -> GraphRow:
        mapping = getattr(row, "_mapping", None)
        if mapping is not None:
            return {key: decode_agtype(value) for key, value in mapping.items()}
        return {column: decode_agtype(value) for column, value in zip(columns, row)}
