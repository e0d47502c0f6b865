"""Shared fixtures for query engine tests.

Provides a seeded in-memory SQLite store database, settings factories and
mock LLM clients so that individual test modules stay concise and
self-contained.
"""

from __future__ import annotations

from unittest.mock import MagicMock, PropertyMock

import pytest
import pytest_asyncio
from sqlalchemy import text

from query_engine.config import QuerySettings
from query_engine.engines.llm_client import LLMClient
from query_engine.sql_toolkit import reset_toolkit
from query_engine.state.database import get_local_engine

# ------------------------------------------------------------------ #
# Store database
# ------------------------------------------------------------------ #

_DDL = (
    """
    CREATE TABLE customers (
        id INTEGER NOT NULL PRIMARY KEY,
        store_id INTEGER NOT NULL,
        name VARCHAR(100) NOT NULL,
        email VARCHAR(255),
        password VARCHAR(255)
    )
    """,
    """
    CREATE TABLE orders (
        id INTEGER NOT NULL PRIMARY KEY,
        store_id INTEGER NOT NULL,
        customer_id INTEGER REFERENCES customers (id),
        total NUMERIC(10, 2) NOT NULL,
        status VARCHAR(20),
        created_at VARCHAR(32)
    )
    """,
    "CREATE INDEX ix_orders_store_id ON orders (store_id)",
    """
    CREATE TABLE audit_log (
        id INTEGER NOT NULL PRIMARY KEY,
        store_id INTEGER NOT NULL,
        action VARCHAR(50)
    )
    """,
)

_SEED = (
    "INSERT INTO customers VALUES (1, 42, 'Ada', 'ada@example.com', 'hash-1')",
    "INSERT INTO customers VALUES (2, 42, 'Grace', 'grace@example.com', 'hash-2')",
    "INSERT INTO customers VALUES (3, 7, 'Linus', 'linus@example.com', 'hash-3')",
    "INSERT INTO orders VALUES (1, 42, 1, 19.99, 'paid', '2025-05-01')",
    "INSERT INTO orders VALUES (2, 42, 2, 250.00, 'paid', '2025-05-02')",
    "INSERT INTO orders VALUES (3, 42, 1, 5.50, 'refunded', '2025-05-03')",
    "INSERT INTO orders VALUES (4, 7, 3, 999.00, 'paid', '2025-05-01')",
    "INSERT INTO orders VALUES (5, 7, 3, 12.00, 'paid', '2025-05-04')",
    "INSERT INTO audit_log VALUES (1, 42, 'login')",
)


@pytest_asyncio.fixture
async def store_engine():
    """Provide an async engine over a seeded in-memory store database."""
    engine = get_local_engine()
    async with engine.begin() as conn:
        for statement in _DDL + _SEED:
            await conn.execute(text(statement))

    yield engine

    await engine.dispose()


# ------------------------------------------------------------------ #
# Settings
# ------------------------------------------------------------------ #


@pytest.fixture()
def settings() -> QuerySettings:
    """Settings with an allowlist matching the seeded database."""
    return QuerySettings(
        database_url="sqlite+aiosqlite:///:memory:",
        sql_dialect="sqlite",
        allowed_tables=["orders", "customers"],
        max_rows=1000,
        query_timeout_seconds=5,
        _env_file=None,
    )


# ------------------------------------------------------------------ #
# LLM mocks
# ------------------------------------------------------------------ #


@pytest.fixture()
def mock_llm_enabled() -> MagicMock:
    """Return a MagicMock that behaves like an *enabled* LLMClient."""
    llm = MagicMock(spec=LLMClient)
    type(llm).enabled = PropertyMock(return_value=True)
    return llm


@pytest.fixture()
def mock_llm_disabled() -> MagicMock:
    """Return a MagicMock that behaves like a *disabled* LLMClient."""
    llm = MagicMock(spec=LLMClient)
    type(llm).enabled = PropertyMock(return_value=False)
    return llm


# ------------------------------------------------------------------ #
# Toolkit singleton
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True)
def _fresh_toolkit():
    """Each test starts from the default sqlglot toolkit."""
    reset_toolkit()
    yield
    reset_toolkit()
