"""In-process signals around the dynamic query pipeline.

Two kinds of events flow through the bus:

* ``SCHEMA_CHANGED`` is published by whatever applies migrations.  The
  schema provider listens for it and drops cached snapshots, so a new
  column becomes visible to the generator before the TTL runs out.
* ``QUERY_COMPLETED`` / ``QUERY_FAILED`` are published by the orchestrator
  once per request, for audit or metrics listeners.

Usage::

    bus = get_event_bus()
    await bus.emit(EventType.SCHEMA_CHANGED, store_id=42, data={"tables": ["orders"]})

Dispatch is fire-and-forget.  A listener that raises is logged and skipped;
the publisher never sees the error.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SCHEMA_CHANGED = "schema.changed"
    QUERY_COMPLETED = "query.completed"
    QUERY_FAILED = "query.failed"


class EventPayload(BaseModel):
    """What a listener receives.

    ``store_id`` is ``None`` when the event concerns every store, e.g. a
    migration on a shared table.
    """

    event_type: EventType
    store_id: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__name__", type(handler).__name__)


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """Route events to async listeners.

    Listeners registered without an ``event_type`` receive every event.
    Matching listeners run concurrently and independently of each other.
    """

    def __init__(self) -> None:
        # ``None`` key holds wildcard listeners.
        self._handlers: defaultdict[EventType | None, list[EventHandler]] = defaultdict(list)

    @property
    def handler_count(self) -> int:
        return sum(len(handlers) for handlers in self._handlers.values())

    def register_handler(self, handler: EventHandler, *, event_type: EventType | None = None) -> None:
        """Add *handler* for *event_type*, or for all events when omitted."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered %s for %s", _handler_name(handler), event_type.value if event_type else "*")

    def unregister_handler(self, handler: EventHandler, *, event_type: EventType | None = None) -> bool:
        """Remove a previously registered handler.

        Returns
        -------
        bool
            ``False`` if *handler* was not registered for *event_type*.
        """
        handlers = self._handlers.get(event_type, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def _listeners(self, event_type: EventType) -> list[EventHandler]:
        return [*self._handlers.get(event_type, ()), *self._handlers.get(None, ())]

    async def emit(
        self,
        event_type: EventType,
        *,
        store_id: int | None = None,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Publish an event.  Never raises because of a listener."""
        listeners = self._listeners(event_type)
        if not listeners:
            logger.debug("No listeners for %s", event_type.value)
            return

        payload = EventPayload(
            event_type=event_type,
            store_id=store_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )
        logger.info(
            "Emitting %s (store=%s, corr=%s) to %d listener(s)",
            event_type.value,
            "*" if store_id is None else store_id,
            payload.correlation_id[:8],
            len(listeners),
        )
        await asyncio.gather(*(self._deliver(listener, payload) for listener in listeners))

    @staticmethod
    async def _deliver(handler: EventHandler, payload: EventPayload) -> None:
        try:
            await handler(payload)
        except Exception:
            logger.exception(
                "Listener %s failed on %s (store=%s)",
                _handler_name(handler),
                payload.event_type.value,
                payload.store_id,
            )


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    global _event_bus  # noqa: PLW0603
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Forget the process-wide bus.  Tests only."""
    global _event_bus  # noqa: PLW0603
    _event_bus = None
