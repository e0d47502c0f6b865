"""Unit tests for QueryExecutor and driver error sanitization.

Execution runs against the seeded in-memory SQLite database from
``conftest.py``.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from query_engine.executor.error_sanitizer import MAX_ERROR_LENGTH, sanitize_error_message
from query_engine.executor.query_executor import QueryExecutor, guard_statements

# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecute:
    @pytest.mark.asyncio
    async def test_returns_rows_as_dicts(self, store_engine):
        executor = QueryExecutor(store_engine)
        result = await executor.execute("SELECT id, status FROM orders WHERE store_id = 42 ORDER BY id")

        assert result.success
        assert result.error is None
        assert result.row_count == 3
        assert result.data[0] == {"id": 1, "status": "paid"}
        assert result.truncated is False
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_empty_result(self, store_engine):
        result = await QueryExecutor(store_engine).execute("SELECT id FROM orders WHERE store_id = 999")
        assert result.success
        assert result.data == []
        assert result.row_count == 0
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_bind_markers_inside_literals_are_plain_text(self, store_engine):
        async with store_engine.begin() as conn:
            await conn.exec_driver_sql(
                "INSERT INTO orders VALUES (6, 42, 1, 1.00, 'on hold :b ? 100%', '2025-05-05')"
            )

        result = await QueryExecutor(store_engine).execute(
            "SELECT id, status FROM orders WHERE status = 'on hold :b ? 100%'"
        )

        assert result.success, result.error
        assert result.data == [{"id": 6, "status": "on hold :b ? 100%"}]

    @pytest.mark.asyncio
    async def test_row_cap_and_truncation(self, store_engine):
        executor = QueryExecutor(store_engine, max_rows=2)
        result = await executor.execute("SELECT id FROM orders LIMIT 50000")

        assert result.success
        assert result.row_count == 2
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_exact_fit_is_reported_as_truncated(self, store_engine):
        result = await QueryExecutor(store_engine, max_rows=3).execute(
            "SELECT id FROM orders WHERE store_id = 42"
        )
        assert result.row_count == 3
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_database_error_is_sanitized(self, store_engine):
        result = await QueryExecutor(store_engine).execute("SELECT * FROM missing_table")

        assert result.success is False
        assert result.error == "no such table: missing_table"
        assert result.data == []

    @pytest.mark.asyncio
    async def test_connection_is_read_only(self, store_engine):
        result = await QueryExecutor(store_engine).execute("UPDATE orders SET status = 'void'")
        assert result.success is False

        async with store_engine.connect() as conn:
            statuses = (await conn.execute(text("SELECT DISTINCT status FROM orders"))).scalars().all()
        assert "void" not in statuses

    @pytest.mark.asyncio
    async def test_connection_usable_after_query(self, store_engine):
        await QueryExecutor(store_engine).execute("SELECT 1")

        async with store_engine.begin() as conn:
            await conn.execute(text("INSERT INTO audit_log VALUES (2, 42, 'export')"))
            count = (await conn.execute(text("SELECT COUNT(*) FROM audit_log"))).scalar_one()
        assert count == 2

    @pytest.mark.asyncio
    async def test_deadline(self, store_engine):
        async def _hang(self, sql):
            await asyncio.sleep(5)

        executor = QueryExecutor(store_engine, timeout_seconds=0.01)
        with patch.object(QueryExecutor, "_run", _hang):
            result = await executor.execute("SELECT 1")

        assert result.success is False
        assert result.error == "Query exceeded the 0.01s time limit"

    def test_rejects_invalid_limits(self, store_engine):
        with pytest.raises(ValueError):
            QueryExecutor(store_engine, max_rows=0)
        with pytest.raises(ValueError):
            QueryExecutor(store_engine, timeout_seconds=0)


# ---------------------------------------------------------------------------
# Guard statements
# ---------------------------------------------------------------------------


class TestGuardStatements:
    def test_postgresql(self):
        assert guard_statements(SimpleNamespace(name="postgresql"), 2.5) == [
            "SET TRANSACTION READ ONLY",
            "SET LOCAL statement_timeout = 2500",
        ]

    def test_mysql(self):
        assert guard_statements(SimpleNamespace(name="mysql", is_mariadb=False), 10) == [
            "SET TRANSACTION READ ONLY",
            "SET SESSION MAX_EXECUTION_TIME = 10000",
        ]

    def test_mariadb(self):
        assert guard_statements(SimpleNamespace(name="mysql", is_mariadb=True), 10) == [
            "SET TRANSACTION READ ONLY",
            "SET SESSION max_statement_time = 10",
        ]

    def test_sqlite(self):
        assert guard_statements(SimpleNamespace(name="sqlite"), 10) == ["PRAGMA query_only = ON"]

    def test_unknown_engine(self):
        assert guard_statements(SimpleNamespace(name="oracle"), 10) == []


# ---------------------------------------------------------------------------
# Error sanitization
# ---------------------------------------------------------------------------


class TestSanitizeErrorMessage:
    def test_driver_message_unwrapped(self):
        exc = OperationalError("SELECT * FROM nope", {}, Exception("no such table: nope"))
        assert sanitize_error_message(exc) == "no such table: nope"

    def test_paths_and_hosts_removed(self):
        exc = Exception("could not open /var/lib/postgresql/data/base/1 at 10.0.0.5:5432")
        assert sanitize_error_message(exc) == "could not open [path] at [ip]"

    def test_windows_path_removed(self):
        assert sanitize_error_message(Exception(r"C:\data\store.db is locked")) == "[path] is locked"

    def test_statement_text_removed(self):
        sql = "SELECT secret FROM vault"
        exc = Exception(f"syntax error in {sql} near FROM")
        assert sanitize_error_message(exc, sql) == "syntax error in near FROM"

    def test_sqlalchemy_decorations_removed(self):
        exc = Exception(
            "boom [SQL: SELECT secret FROM t] [parameters: (1,)] "
            "(Background on this error at: https://sqlalche.me/e/20/e3q8)"
        )
        assert sanitize_error_message(exc) == "boom"

    def test_empty_message(self):
        assert sanitize_error_message(Exception("")) == "Query execution failed"

    def test_truncated(self):
        message = sanitize_error_message(Exception("x" * 500))
        assert len(message) == MAX_ERROR_LENGTH
        assert message.endswith("...")
