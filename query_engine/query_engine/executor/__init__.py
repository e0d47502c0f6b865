"""Read-only execution of validated queries."""

from __future__ import annotations

from query_engine.executor.error_sanitizer import sanitize_error_message
from query_engine.executor.query_executor import QueryExecutor, guard_statements

__all__ = [
    "QueryExecutor",
    "guard_statements",
    "sanitize_error_message",
]
