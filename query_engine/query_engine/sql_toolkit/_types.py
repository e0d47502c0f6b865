"""SQL toolkit shared types.

Every type here is implementation-agnostic. Consumer code operates on these
types exclusively. The backing implementation converts to/from its native
types internally.

ZERO dependency on any SQL parsing library.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Dialect
# ---------------------------------------------------------------------------


class Dialect(str, enum.Enum):
    """Supported SQL dialects."""

    MYSQL = "mysql"
    POSTGRES = "postgres"
    SQLITE = "sqlite"


# ---------------------------------------------------------------------------
# Reference Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TableRef:
    """A table reference, optionally qualified by schema.

    Immutable.  Deterministic ``__hash__`` and ``__eq__`` via *frozen=True*.
    Names are lowercased by the implementation.  ``alias`` is informational
    and does not take part in equality.
    """

    schema: str | None = None
    name: str = ""
    alias: str | None = field(default=None, compare=False)
    # The identifier as written in the query, before lowercasing.
    source_name: str | None = field(default=None, compare=False)

    @property
    def reference_name(self) -> str:
        """Name that qualifies this table's columns in the query."""
        return self.alias or self.source_name or self.name

    @property
    def fully_qualified(self) -> str:
        """Return ``schema.name``, omitting a missing schema."""
        parts = [p for p in (self.schema, self.name) if p]
        return ".".join(parts)

    def __str__(self) -> str:  # pragma: no cover
        return self.fully_qualified


# ---------------------------------------------------------------------------
# Result Containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ScopeResult:
    """Scope-aware table extraction result.

    ``referenced_tables`` has CTE names excluded so that a CTE never appears
    as a physical table dependency.
    """

    referenced_tables: tuple[TableRef, ...]
    cte_names: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ColumnFilter:
    """One ``column = <literal>`` comparison.

    ``qualifier`` is the lowercased table name or alias the column was
    qualified with, or ``""`` when unqualified.  ``value`` is the literal
    rendered as a string.
    """

    qualifier: str
    value: str


@dataclass(frozen=True, slots=True)
class ColumnFilterResult:
    """Literal comparisons against one column, found in a parsed query.

    ``root_filters`` holds the ``column = <literal>`` predicates that are
    top-level AND conjuncts of the outermost SELECT's WHERE clause, i.e.
    predicates that constrain every returned row.  ``all_filters`` holds every
    ``=`` / ``IN`` literal comparison against the column anywhere in the tree.
    """

    root_filters: tuple[ColumnFilter, ...]
    all_filters: tuple[ColumnFilter, ...]
    is_compound: bool
    has_placeholders: bool = False


@dataclass(frozen=True, slots=True)
class SafetyViolation:
    """A non-read-only SQL construct detected by the safety guard."""

    violation_type: str
    target: str
    detail: str


@dataclass(frozen=True, slots=True)
class SafetyCheckResult:
    """Result of a read-only safety check."""

    is_safe: bool
    violations: tuple[SafetyViolation, ...]
    checked_statements: int


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SqlToolkitError(Exception):
    """Base exception for all sql_toolkit errors."""


class SqlParseError(SqlToolkitError):
    """SQL could not be parsed."""
