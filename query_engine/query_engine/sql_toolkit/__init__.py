"""Structural SQL checks behind a backend-neutral interface.

The validator uses two capabilities::

    tk = get_sql_toolkit()
    tk.safety_guard.check_read_only(sql, Dialect.MYSQL)          # read-only, single statement
    tk.scope_analyzer.column_filters(sql, "store_id", Dialect.MYSQL)  # tenant predicates

Only ``impl/sqlglot_impl.py`` imports sqlglot.  Tests and embedders can swap
the backend with ``register_implementation()``.
"""

from ._factory import get_sql_toolkit, register_implementation, reset_toolkit
from ._protocols import SqlSafetyGuard, SqlScopeAnalyzer, SqlToolkit
from ._types import (
    ColumnFilter,
    ColumnFilterResult,
    Dialect,
    SafetyCheckResult,
    SafetyViolation,
    ScopeResult,
    SqlParseError,
    SqlToolkitError,
    TableRef,
)

__all__ = [
    "ColumnFilter",
    "ColumnFilterResult",
    "Dialect",
    "SafetyCheckResult",
    "SafetyViolation",
    "ScopeResult",
    "SqlParseError",
    "SqlSafetyGuard",
    "SqlScopeAnalyzer",
    "SqlToolkit",
    "SqlToolkitError",
    "TableRef",
    "get_sql_toolkit",
    "register_implementation",
    "reset_toolkit",
]
