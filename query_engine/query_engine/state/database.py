"""Async SQLAlchemy engine factory for the reporting database.

Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``mysql+aiomysql://``     → connection-pooled MySQL/MariaDB engine
  - ``sqlite+aiosqlite://``   → single-connection SQLite engine (local dev, tests)

The query pipeline only ever reads through these engines.  Per-statement
timeouts and read-only guards are applied by the executor on each
connection; the PostgreSQL engine additionally carries a server-side
default so that a connection used outside the executor is still bounded.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def get_engine(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 5,
    *,
    statement_timeout_seconds: float | None = None,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL, MySQL or SQLite scheme).
    pool_size:
        Number of persistent connections (ignored for SQLite).
    max_overflow:
        Maximum overflow connections (ignored for SQLite).
    statement_timeout_seconds:
        Server-side default statement timeout for PostgreSQL connections.

    Returns
    -------
    AsyncEngine
        A configured async engine.
    """
    if database_url.startswith("sqlite"):
        # Extract path from URL: sqlite+aiosqlite:///path/to/db
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path or ":memory:")

    connect_args: dict[str, object] = {}
    if database_url.startswith("postgresql") and statement_timeout_seconds is not None:
        connect_args["server_settings"] = {
            "statement_timeout": str(int(statement_timeout_seconds * 1000)),
            "default_transaction_read_only": "on",
        }

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args=connect_args,
    )
    logger.info(
        "Created async engine dialect=%s pool_size=%d max_overflow=%d",
        engine.dialect.name,
        pool_size,
        max_overflow,
    )
    return engine


def get_local_engine(db_path: Path | str = ":memory:") -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    ``:memory:`` yields an ephemeral database shared by every checkout of
    the engine's single connection, which is what tests need.
    """
    if db_path == ":memory:":
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine
