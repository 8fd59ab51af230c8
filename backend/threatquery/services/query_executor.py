"""Query executor - runs isolated queries against the relational backend.

Applies the statement guard, a hard row cap and a time budget, and shapes
backend rows into column-ordered records.  Backend failures become
``ExecutionError`` with a kind derived from the message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from sqlalchemy import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from threatquery.config import settings
from threatquery.services.query_diagnostics import ErrorKind, classify
from threatquery.services.query_isolation import IsolatedQuery
from threatquery.services.query_tokens import TokenKind, tokenize

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class QueryLimits:
    max_rows: int = 100
    timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls) -> "QueryLimits":
        return cls(
            max_rows=settings.QUERY_MAX_ROWS,
            timeout_seconds=settings.QUERY_TIMEOUT_SECONDS,
        )


@dataclass
class BackendResult:
    columns: list[str]
    rows: Sequence[Sequence[Any]]
    total: int | None = None  # matched rows, when the backend can tell


@dataclass
class ExecutionResult:
    rows: list[dict] = field(default_factory=list)
    row_count: int = 0
    elapsed_ms: int = 0
    columns: list[str] = field(default_factory=list)


class QueryBackend(Protocol):
    async def run(self, sql: str, max_rows: int, timeout_seconds: float) -> BackendResult:
        ...


# ── Statement guard ───────────────────────────────────────────────────

BLOCKED_KEYWORDS = frozenset({
    "drop", "delete", "update", "insert", "alter", "create", "truncate",
    "grant", "revoke", "attach", "detach", "pragma", "copy", "merge",
    "into", "vacuum", "call", "lock",
})
SET_OPERATORS = frozenset({"union", "intersect", "except"})


def check_statement(sql: str) -> None:
    """Reject anything but a single read-only SELECT over one source.

    Keywords are matched as whole tokens outside string literals, so
    ``created_at`` or ``'drop table'`` inside a filter value are fine.
    """
    tokens = tokenize(sql)
    if not tokens or not tokens[0].is_word("select"):
        raise ExecutionError(
            ErrorKind.PERMISSION_DENIED,
            "Permission denied: only SELECT statements can be run",
        )

    selects = 0
    for i, tok in enumerate(tokens):
        if tok.kind is TokenKind.PUNCT:
            if tok.text in ("'", '"', "`", "[", "]"):
                raise ExecutionError(
                    ErrorKind.SYNTAX, f"Syntax error: unbalanced quote or bracket {tok.text!r}"
                )
            if tok.text == "$":
                raise ExecutionError(ErrorKind.SYNTAX, "Syntax error: unsupported character '$'")
            if tok.text == ";" and any(not t.is_punct(";") for t in tokens[i + 1:]):
                raise ExecutionError(
                    ErrorKind.PERMISSION_DENIED,
                    "Permission denied: multiple statements are not allowed",
                )
        if tok.kind is not TokenKind.WORD:
            continue
        if tok.lower in BLOCKED_KEYWORDS:
            raise ExecutionError(
                ErrorKind.PERMISSION_DENIED,
                f"Permission denied: dangerous operation '{tok.text.upper()}' not allowed in queries",
            )
        if tok.lower in SET_OPERATORS:
            raise ExecutionError(
                ErrorKind.PERMISSION_DENIED,
                f"Permission denied: set operation '{tok.text.upper()}' not allowed in queries",
            )
        if tok.lower == "select":
            selects += 1
            if selects > 1:
                raise ExecutionError(
                    ErrorKind.PERMISSION_DENIED,
                    "Permission denied: subqueries are not allowed in queries",
                )


# ── Backends ──────────────────────────────────────────────────────────


def _fetch_capped(sync_conn: Connection, sql: str, max_rows: int) -> BackendResult:
    """Keep the first *max_rows* rows; the rest are only counted, chunk by chunk."""
    # exec_driver_sql: query text must not be parsed for bind parameters
    result = sync_conn.exec_driver_sql(
        sql, execution_options={"stream_results": True, "max_row_buffer": max_rows}
    )
    try:
        columns = list(result.keys())
        rows = [tuple(r) for r in result.fetchmany(max_rows)]
        total = len(rows)
        if total == max_rows:
            for chunk in result.partitions(max_rows):
                total += len(chunk)
    finally:
        result.close()
    return BackendResult(columns=columns, rows=rows, total=total)


class SqlAlchemyBackend:
    """Runs query text on an async SQLAlchemy engine through a server-side
    cursor, always rolling back."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def run(self, sql: str, max_rows: int, timeout_seconds: float) -> BackendResult:
        async with self.engine.connect() as conn:
            try:
                if conn.dialect.name == "postgresql":
                    await conn.exec_driver_sql(
                        f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"
                    )
                return await conn.run_sync(_fetch_capped, sql, max_rows)
            finally:
                await conn.rollback()


# ── Executor ──────────────────────────────────────────────────────────


class QueryExecutor:
    def __init__(self, backend: QueryBackend, limits: QueryLimits | None = None):
        self.backend = backend
        self.limits = limits or QueryLimits.from_settings()

    async def execute(self, query: IsolatedQuery, limits: QueryLimits | None = None) -> ExecutionResult:
        if not isinstance(query, IsolatedQuery):
            raise TypeError("Only isolation-enforced queries can be executed")
        limits = limits or self.limits
        sql = query.relational_text

        try:
            check_statement(sql)
        except ExecutionError as e:
            logger.warning(f"Blocked query for principal {query.principal_id}: {e.message}")
            raise

        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.backend.run(sql, limits.max_rows, limits.timeout_seconds),
                timeout=limits.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Query timed out after {limits.timeout_seconds:g}s "
                f"for principal {query.principal_id}"
            )
            raise ExecutionError(
                ErrorKind.TIMEOUT,
                f"Query execution timeout after {limits.timeout_seconds:g}s",
            ) from None
        except ExecutionError:
            raise
        except Exception as e:
            # DBAPI errors wrapped by SQLAlchemy keep the driver message on .orig
            message = str(getattr(e, "orig", None) or e)
            kind = classify(message)
            logger.warning(f"Query failed ({kind.value}) for principal {query.principal_id}: {message}")
            raise ExecutionError(kind, f"Query execution failed: {message}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        rows = [dict(zip(result.columns, row)) for row in list(result.rows)[:limits.max_rows]]
        row_count = result.total if result.total is not None else len(result.rows)
        row_count = max(row_count, len(rows))

        logger.info(
            f"Query returned {len(rows)}/{row_count} rows in {elapsed_ms}ms "
            f"for principal {query.principal_id}"
        )
        return ExecutionResult(
            rows=rows,
            row_count=row_count,
            elapsed_ms=elapsed_ms,
            columns=list(result.columns),
        )
