"""Log configuration for the query engine.

Plain text logs by default.  With ``DYNAMIC_QUERY_STRUCTURED_LOGGING=true``
the root logger emits one JSON object per line instead, so that log
aggregators can index records without regex parsing.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "WARNING",
        "logger": "query_engine.parser.query_validator",
        "message": "Rejected dynamic query for store 42: ...",
        "store_id": 42,             // present when passed via ``extra``
        "stage": "validate",        // present when passed via ``extra``
        "exc_info": "Traceback ..." // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from query_engine.config import QuerySettings

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_CONTEXT_FIELDS = ("store_id", "stage")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(settings: QuerySettings, *, level: int | None = None) -> None:
    """Install a single root handler according to *settings*."""
    if level is None:
        level = logging.DEBUG if settings.debug else logging.INFO

    handler = logging.StreamHandler()
    if settings.structured_logging:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
