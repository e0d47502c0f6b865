"""SQL safety checks and rewrites applied before execution."""

from __future__ import annotations

from query_engine.parser.query_validator import (
    DANGEROUS_KEYWORDS,
    STORE_COLUMN,
    QueryValidator,
    extract_tables,
    inject_scope,
    normalize_sql,
    strip_comments,
)
from query_engine.parser.row_limit import apply_row_limit

__all__ = [
    "DANGEROUS_KEYWORDS",
    "STORE_COLUMN",
    "QueryValidator",
    "apply_row_limit",
    "extract_tables",
    "inject_scope",
    "normalize_sql",
    "strip_comments",
]
