"""Allowlisted schema introspection with a per-store TTL cache.

The snapshot built here is the only description of the database that the
query generator ever receives.  Tables outside the allowlist and columns on
the blocklist never appear in it.

Design notes:
    * In-process dict guarded by a threading lock.  Snapshots are immutable,
      so a reader always sees a complete snapshot.  Two concurrent misses
      may both rebuild; the last writer wins.
    * Entries expire lazily on access.  ``clear_cache()`` and the
      ``SCHEMA_CHANGED`` event invalidate immediately.
    * Introspection runs on the async engine through ``run_sync`` so that
      SQLAlchemy's synchronous inspector can be used unchanged.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Inspector
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from query_engine.models.schema import (
    ColumnInfo,
    ForeignKeyInfo,
    IndexInfo,
    SchemaSnapshot,
    TableSchema,
)
from query_engine.services.event_bus import EventBus, EventPayload, EventType

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


@dataclass(slots=True)
class _CacheEntry:
    snapshot: SchemaSnapshot
    expires_at: float


def _clean(names: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for name in names:
        cleaned = name.strip().strip("`\"").lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


class SchemaProvider:
    """Introspect and cache the schema the generator may reference.

    Parameters
    ----------
    engine:
        Async engine for the reporting database.
    allowed_tables:
        Tables exposed to the generator.  Missing tables are skipped.
    blocked_columns:
        Column names never exposed, whatever table they belong to.
    ttl_seconds:
        Snapshot lifetime.  ``0`` disables caching.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        allowed_tables: Iterable[str],
        blocked_columns: Iterable[str] = (),
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._allowed_tables = _clean(allowed_tables)
        self._blocked_columns = frozenset(_clean(blocked_columns))
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[int, _CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def allowed_tables(self) -> list[str]:
        return list(self._allowed_tables)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_schema(self, store_id: int) -> SchemaSnapshot:
        """Return the cached snapshot for *store_id*, building it on a miss."""
        with self._lock:
            entry = self._cache.get(store_id)
            if entry is not None and self._clock() < entry.expires_at:
                logger.debug("Schema cache hit for store %s", store_id)
                return entry.snapshot
            if entry is not None:
                del self._cache[store_id]

        logger.debug("Schema cache miss for store %s", store_id)
        snapshot = await self._build(store_id)

        if self._ttl > 0:
            with self._lock:
                self._cache[store_id] = _CacheEntry(
                    snapshot=snapshot,
                    expires_at=self._clock() + self._ttl,
                )
        return snapshot

    async def get_schema_for_prompt(self, store_id: int) -> str:
        """Render the snapshot as a compact, deterministic prompt block."""
        return render_schema(await self.get_schema(store_id))

    def clear_cache(self, store_id: int | None = None) -> None:
        """Drop the snapshot for *store_id*, or every snapshot when ``None``."""
        with self._lock:
            if store_id is None:
                count = len(self._cache)
                self._cache.clear()
            else:
                count = 1 if self._cache.pop(store_id, None) is not None else 0
        logger.info(
            "Cleared %d schema snapshot(s) for store %s",
            count,
            store_id if store_id is not None else "ALL",
        )

    def subscribe(self, event_bus: EventBus) -> None:
        """Invalidate cached snapshots whenever the schema changes."""

        async def _on_schema_changed(payload: EventPayload) -> None:
            self.clear_cache(payload.store_id)

        _on_schema_changed.__name__ = "schema_cache_invalidator"
        event_bus.register_handler(_on_schema_changed, event_type=EventType.SCHEMA_CHANGED)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def _build(self, store_id: int) -> SchemaSnapshot:
        if not self._allowed_tables:
            logger.warning("No tables are allowed for dynamic queries; schema is empty")
            return SchemaSnapshot(store_id=store_id)

        started = self._clock()
        async with self._engine.connect() as conn:
            tables = await conn.run_sync(self._introspect)
        logger.info(
            "Built schema snapshot for store %s: %d/%d table(s) in %.0fms",
            store_id,
            len(tables),
            len(self._allowed_tables),
            (self._clock() - started) * 1000,
        )
        return SchemaSnapshot(store_id=store_id, tables=tables)

    def _introspect(self, sync_conn: Connection) -> dict[str, TableSchema]:
        inspector = inspect(sync_conn)
        existing: dict[str | None, dict[str, str]] = {}
        tables: dict[str, TableSchema] = {}

        for table in self._allowed_tables:
            schema, _, name = table.rpartition(".")
            schema_key = schema or None
            try:
                if schema_key not in existing:
                    existing[schema_key] = {
                        t.lower(): t for t in inspector.get_table_names(schema=schema_key)
                    }
                actual = existing[schema_key].get(name)
                if actual is None:
                    logger.info("Allowed table %s does not exist; skipping", table)
                    continue
                tables[table] = self._describe(inspector, table, actual, schema_key)
            except SQLAlchemyError:
                logger.warning("Failed to introspect table %s; skipping", table, exc_info=True)

        return tables

    def _describe(
        self,
        inspector: Inspector,
        table: str,
        actual: str,
        schema: str | None,
    ) -> TableSchema:
        columns: dict[str, ColumnInfo] = {}
        for col in inspector.get_columns(actual, schema=schema):
            if col["name"].lower() in self._blocked_columns:
                continue
            columns[col["name"]] = ColumnInfo(
                type=_render_type(col["type"], inspector),
                nullable=bool(col.get("nullable", True)),
            )

        return TableSchema(
            name=table,
            columns=columns,
            indexes=tuple(self._indexes(inspector, actual, schema)),
            foreign_keys=tuple(self._foreign_keys(inspector, actual, schema)),
        )

    def _indexes(self, inspector: Inspector, table: str, schema: str | None) -> list[IndexInfo]:
        try:
            raw = inspector.get_indexes(table, schema=schema)
        except (NotImplementedError, SQLAlchemyError):
            logger.debug("Index introspection unsupported for %s", table, exc_info=True)
            return []

        indexes: list[IndexInfo] = []
        for idx in raw:
            cols = tuple(
                c for c in idx.get("column_names") or () if c and c.lower() not in self._blocked_columns
            )
            if cols:
                indexes.append(
                    IndexInfo(name=idx.get("name"), columns=cols, unique=bool(idx.get("unique")))
                )
        return indexes

    def _foreign_keys(
        self, inspector: Inspector, table: str, schema: str | None
    ) -> list[ForeignKeyInfo]:
        try:
            raw = inspector.get_foreign_keys(table, schema=schema)
        except (NotImplementedError, SQLAlchemyError):
            logger.debug("Foreign key introspection unsupported for %s", table, exc_info=True)
            return []

        keys: list[ForeignKeyInfo] = []
        for fk in raw:
            local = tuple(fk.get("constrained_columns") or ())
            remote = tuple(fk.get("referred_columns") or ())
            referred = (fk.get("referred_table") or "").lower()
            if fk.get("referred_schema"):
                referred = f"{fk['referred_schema'].lower()}.{referred}"
            if not local or referred not in self._allowed_tables:
                continue
            if any(c.lower() in self._blocked_columns for c in local + remote):
                continue
            keys.append(
                ForeignKeyInfo(
                    name=fk.get("name"),
                    columns=local,
                    foreign_table=referred,
                    foreign_columns=remote,
                )
            )
        return keys


def _render_type(column_type: Any, inspector: Inspector) -> str:
    try:
        return str(column_type.compile(dialect=inspector.dialect))
    except Exception:
        return str(getattr(column_type, "__visit_name__", "UNKNOWN")).upper()


def render_schema(snapshot: SchemaSnapshot) -> str:
    """Render *snapshot* for inclusion in a generation prompt.

    Tables are listed in allowlist order, columns in database order.  The
    same snapshot always renders to the same text.
    """
    blocks: list[str] = []
    for name, table in snapshot.tables.items():
        lines = [f"Table: {name}"]
        for col_name, col in table.columns.items():
            nullability = "NULL" if col.nullable else "NOT NULL"
            lines.append(f"  - {col_name}: {col.type} {nullability}")
        if table.foreign_keys:
            lines.append("  Foreign keys:")
            for fk in table.foreign_keys:
                lines.append(
                    f"  - {', '.join(fk.columns)} -> "
                    f"{fk.foreign_table}.{', '.join(fk.foreign_columns)}"
                )
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)
