"""SQL toolkit protocol definitions.

These define the interface contract that ANY implementation must satisfy.
Consumer code depends on these protocols, never on concrete implementations.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ._types import ColumnFilterResult, Dialect, SafetyCheckResult, ScopeResult, TableRef

# ---------------------------------------------------------------------------
# Individual Capability Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class SqlScopeAnalyzer(Protocol):
    """Resolve which tables and filters a query actually touches."""

    def extract_tables(
        self,
        sql: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> ScopeResult:
        """Extract every physical table referenced by a single statement.

        CTE names are excluded from ``referenced_tables``.

        Raises:
            SqlParseError: If the SQL cannot be parsed.
        """
        ...

    def column_filters(
        self,
        sql: str,
        column: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> ColumnFilterResult:
        """Collect literal ``=`` / ``IN`` comparisons against *column*.

        Column matching is case-insensitive; the qualifier is reported on
        each :class:`ColumnFilter`.

        Raises:
            SqlParseError: If the SQL cannot be parsed.
        """
        ...

    def primary_table(
        self,
        sql: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> TableRef | None:
        """Return the first FROM source of the outermost SELECT.

        Returns ``None`` when the root is not a plain SELECT, has no FROM, or
        its first source is a subquery or a CTE rather than a base table.

        Raises:
            SqlParseError: If the SQL cannot be parsed.
        """
        ...


@runtime_checkable
class SqlSafetyGuard(Protocol):
    """Detect anything that is not a single read-only query."""

    def check_read_only(
        self,
        sql: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> SafetyCheckResult:
        """Check that *sql* is exactly one statement with no write, DDL,
        privilege, session or export constructs anywhere in its tree.
        Placeholders are reported as ``UNBOUND_PARAMETER``.

        Never raises: unparseable input is reported as a violation.
        """
        ...


# ---------------------------------------------------------------------------
# Composite Toolkit Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class SqlToolkit(Protocol):
    """Aggregate of every SQL capability the query pipeline uses."""

    @property
    def scope_analyzer(self) -> SqlScopeAnalyzer: ...

    @property
    def safety_guard(self) -> SqlSafetyGuard: ...
