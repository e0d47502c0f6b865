"""Bounded, read-only execution of validated SQL.

Every call opens its own connection, applies the engine's read-only and
timeout guards, runs exactly one statement, materialises at most
``max_rows`` rows and rolls back.  Nothing is ever committed.

The executor trusts the validator boundary: it does not re-check the SQL,
but it re-applies the row cap so that the cap holds even for a caller that
skipped validation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from sqlalchemy.engine import Dialect as SADialect
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from query_engine.executor.error_sanitizer import sanitize_error_message
from query_engine.models.query import ExecutionResult
from query_engine.parser.row_limit import apply_row_limit

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 1000
DEFAULT_TIMEOUT_SECONDS = 10.0

# Extra client-side allowance on top of the server-side timeout, so that the
# server gets the chance to cancel the statement first.
_DEADLINE_GRACE_SECONDS = 0.5


def guard_statements(dialect: SADialect, timeout_seconds: float) -> list[str]:
    """Return the session statements that make a connection read-only and bounded.

    Engines without a server-side statement timeout rely on the executor's
    outer deadline alone.
    """
    timeout_ms = max(int(timeout_seconds * 1000), 1)
    name = dialect.name

    if name == "postgresql":
        return [
            "SET TRANSACTION READ ONLY",
            f"SET LOCAL statement_timeout = {timeout_ms}",
        ]
    if name in ("mysql", "mariadb"):
        if name == "mariadb" or getattr(dialect, "is_mariadb", False):
            return [
                "SET TRANSACTION READ ONLY",
                f"SET SESSION max_statement_time = {timeout_seconds:g}",
            ]
        return [
            "SET TRANSACTION READ ONLY",
            f"SET SESSION MAX_EXECUTION_TIME = {timeout_ms}",
        ]
    if name == "sqlite":
        return ["PRAGMA query_only = ON"]
    return []


class QueryExecutor:
    """Execute validated SQL with a row cap and a statement timeout.

    Parameters
    ----------
    engine:
        Async engine for the reporting database.
    max_rows:
        Row ceiling.  ``truncated`` is set when a result reaches it.
    timeout_seconds:
        Server-side statement timeout.  The client-side deadline is this
        value plus a short grace period.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        max_rows: int = DEFAULT_MAX_ROWS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if max_rows <= 0:
            raise ValueError(f"max_rows must be positive, got {max_rows}")
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        self._engine = engine
        self._max_rows = max_rows
        self._timeout = timeout_seconds

    async def execute(self, sql: str) -> ExecutionResult:
        """Run *sql* and return its rows.  Never raises for database errors."""
        capped = apply_row_limit(sql, self._max_rows)
        started = time.monotonic()

        try:
            rows = await asyncio.wait_for(
                self._run(capped),
                timeout=self._timeout + _DEADLINE_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning("Dynamic query exceeded the %.1fs deadline", self._timeout)
            return ExecutionResult(
                success=False,
                error=f"Query exceeded the {self._timeout:g}s time limit",
                execution_time_ms=elapsed_ms,
            )
        except Exception as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.debug("Raw dynamic query error: %s", exc)
            message = sanitize_error_message(exc, capped)
            logger.warning("Dynamic query execution failed after %dms: %s", elapsed_ms, message)
            return ExecutionResult(success=False, error=message, execution_time_ms=elapsed_ms)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        row_count = len(rows)
        truncated = row_count == self._max_rows
        logger.info(
            "Dynamic query returned %d row(s) in %dms%s",
            row_count,
            elapsed_ms,
            " (truncated)" if truncated else "",
        )
        return ExecutionResult(
            success=True,
            data=rows,
            row_count=row_count,
            truncated=truncated,
            execution_time_ms=elapsed_ms,
        )

    async def _run(self, sql: str) -> list[dict[str, Any]]:
        async with self._engine.connect() as conn:
            try:
                await self._apply_guards(conn)
                # Sent verbatim: no bind parsing, so a colon or percent inside a
                # string literal is plain text.
                result = await conn.exec_driver_sql(sql)
                return [dict(row) for row in result.mappings().fetchmany(self._max_rows)]
            finally:
                await conn.rollback()
                if conn.dialect.name == "sqlite":
                    await conn.exec_driver_sql("PRAGMA query_only = OFF")

    async def _apply_guards(self, conn: AsyncConnection) -> None:
        for statement in guard_statements(conn.dialect, self._timeout):
            await conn.exec_driver_sql(statement)
