"""SQLGlot-backed implementation of the SQL toolkit protocols.

This is the ONLY file in the codebase that imports ``sqlglot`` directly.
All consumer code goes through the protocol interfaces defined in
:mod:`query_engine.sql_toolkit._protocols`.

Supports SQLGlot v25 and later.
"""

from __future__ import annotations

import logging

import sqlglot
from sqlglot import exp
from sqlglot.errors import ErrorLevel, SqlglotError

from .._types import (
    ColumnFilter,
    ColumnFilterResult,
    Dialect,
    SafetyCheckResult,
    SafetyViolation,
    ScopeResult,
    SqlParseError,
    TableRef,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal: forbidden constructs
# ---------------------------------------------------------------------------

# Node types that must never appear anywhere in a read-only query tree.
# Looked up by name because several were renamed across sqlglot releases.
_FORBIDDEN_NODE_NAMES: tuple[str, ...] = (
    "Insert",
    "Update",
    "Delete",
    "Merge",
    "Drop",
    "Create",
    "Alter",
    "AlterTable",
    "TruncateTable",
    "Grant",
    "Revoke",
    "Command",
    "Set",
    "Use",
    "Transaction",
    "Commit",
    "Rollback",
    "LoadData",
    "Copy",
    "Pragma",
    "Into",
    "Lock",
)

_FORBIDDEN_NODE_TYPES: tuple[type[exp.Expression], ...] = tuple(
    getattr(exp, name) for name in _FORBIDDEN_NODE_NAMES if hasattr(exp, name)
)

# Functions with side effects on the server or the file system, or that
# exist only to stall a connection.
_FORBIDDEN_FUNCTIONS: frozenset[str] = frozenset(
    {
        "benchmark",
        "dblink",
        "get_lock",
        "load_file",
        "lo_export",
        "lo_import",
        "pg_cancel_backend",
        "pg_ls_dir",
        "pg_read_binary_file",
        "pg_read_file",
        "pg_sleep",
        "pg_terminate_backend",
        "release_lock",
        "set_config",
        "sleep",
    }
)


def _dialect_value(dialect: Dialect) -> str:
    """Return the sqlglot dialect string for a :class:`Dialect` enum member."""
    return dialect.value


def _parse_single(sql: str, dialect: Dialect) -> exp.Expression:
    """Parse *sql* and return its only statement.

    Raises:
        SqlParseError: If the SQL cannot be parsed or does not contain
            exactly one statement.
    """
    try:
        statements = sqlglot.parse(
            sql,
            read=_dialect_value(dialect),
            error_level=ErrorLevel.RAISE,
        )
    except SqlglotError as exc:
        raise SqlParseError(f"Failed to parse SQL: {exc}") from exc

    parsed = [s for s in statements if s is not None]
    if len(parsed) != 1:
        raise SqlParseError(f"Expected exactly one statement, found {len(parsed)}")
    return parsed[0]


def _normalise_table_name(table: exp.Table) -> TableRef:
    """Convert a sqlglot ``Table`` node to a lowercased :class:`TableRef`."""
    schema = None
    db_node = table.args.get("db")
    if db_node is not None and hasattr(db_node, "name") and db_node.name:
        schema = db_node.name.lower()
    return TableRef(schema=schema, name=(table.name or "").lower())


def _collect_cte_names(ast: exp.Expression) -> set[str]:
    """Collect all CTE alias names defined anywhere in *ast*."""
    cte_names: set[str] = set()
    for cte_node in ast.find_all(exp.CTE):
        alias = cte_node.args.get("alias")
        if alias is not None and hasattr(alias, "name") and alias.name:
            cte_names.add(alias.name.lower())
    return cte_names


def _literal_value(node: exp.Expression) -> str | None:
    """Render a literal (optionally negated) as a plain string, else None."""
    if isinstance(node, exp.Paren):
        return _literal_value(node.this)
    if isinstance(node, exp.Literal):
        return str(node.this)
    if isinstance(node, exp.Neg) and isinstance(node.this, exp.Literal):
        return f"-{node.this.this}"
    return None


def _is_placeholder(node: exp.Expression) -> bool:
    return isinstance(node, (exp.Placeholder, exp.Parameter))


def _is_target_column(node: exp.Expression, column: str) -> bool:
    return isinstance(node, exp.Column) and node.name.lower() == column


def _flatten_and(node: exp.Expression) -> list[exp.Expression]:
    """Split a predicate into its top-level AND conjuncts."""
    while isinstance(node, exp.Paren):
        node = node.this
    if isinstance(node, exp.And):
        return _flatten_and(node.left) + _flatten_and(node.right)
    return [node]


def _eq_filter(node: exp.Expression, column: str) -> tuple[ColumnFilter | None, bool]:
    """Return ``(filter, is_placeholder)`` for ``column = <x>`` in either order."""
    for col_side, val_side in ((node.left, node.right), (node.right, node.left)):
        if _is_target_column(col_side, column):
            if _is_placeholder(val_side):
                return None, True
            value = _literal_value(val_side)
            if value is None:
                return None, False
            return ColumnFilter(qualifier=col_side.table.lower(), value=value), False
    return None, False


def _from_clause(select: exp.Select) -> exp.Expression | None:
    # The arg key was renamed in newer sqlglot releases.
    return select.args.get("from") or select.args.get("from_")


# ---------------------------------------------------------------------------
# SqlGlotScopeAnalyzer
# ---------------------------------------------------------------------------


class SqlGlotScopeAnalyzer:
    """SQLGlot-backed :class:`SqlScopeAnalyzer` implementation."""

    def extract_tables(
        self,
        sql: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> ScopeResult:
        """Extract table references, excluding CTE names."""
        ast = _parse_single(sql, dialect)

        cte_names = _collect_cte_names(ast)
        tables: set[TableRef] = set()
        for table in ast.find_all(exp.Table):
            ref = _normalise_table_name(table)
            if ref.name and ref.name not in cte_names:
                tables.add(ref)

        # Sort for determinism.
        return ScopeResult(
            referenced_tables=tuple(sorted(tables, key=lambda t: t.fully_qualified)),
            cte_names=tuple(sorted(cte_names)),
        )

    def column_filters(
        self,
        sql: str,
        column: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> ColumnFilterResult:
        """Collect literal comparisons against *column*."""
        ast = _parse_single(sql, dialect)
        column = column.lower()

        is_compound = not isinstance(ast, exp.Select)
        has_placeholders = False

        root_filters: list[ColumnFilter] = []
        where = None if is_compound else ast.args.get("where")
        if where is not None:
            for conjunct in _flatten_and(where.this):
                if not isinstance(conjunct, exp.EQ):
                    continue
                found, placeholder = _eq_filter(conjunct, column)
                has_placeholders = has_placeholders or placeholder
                if found is not None:
                    root_filters.append(found)

        all_filters: list[ColumnFilter] = []
        for eq in ast.find_all(exp.EQ):
            found, placeholder = _eq_filter(eq, column)
            has_placeholders = has_placeholders or placeholder
            if found is not None:
                all_filters.append(found)

        for in_node in ast.find_all(exp.In):
            target = in_node.this
            if not _is_target_column(target, column):
                continue
            for item in in_node.expressions:
                if _is_placeholder(item):
                    has_placeholders = True
                    continue
                value = _literal_value(item)
                if value is not None:
                    all_filters.append(ColumnFilter(qualifier=target.table.lower(), value=value))

        return ColumnFilterResult(
            root_filters=tuple(root_filters),
            all_filters=tuple(all_filters),
            is_compound=is_compound,
            has_placeholders=has_placeholders,
        )

    def primary_table(
        self,
        sql: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> TableRef | None:
        """Return the outermost SELECT's first FROM source if it is a base table."""
        ast = _parse_single(sql, dialect)
        if not isinstance(ast, exp.Select):
            return None

        from_clause = _from_clause(ast)
        if from_clause is None:
            return None

        source = from_clause.this
        if not isinstance(source, exp.Table) or not source.name:
            return None
        if source.name.lower() in _collect_cte_names(ast):
            return None

        ref = _normalise_table_name(source)
        return TableRef(
            schema=ref.schema,
            name=ref.name,
            alias=source.alias or None,
            source_name=source.this.sql(dialect=_dialect_value(dialect)),
        )


# ---------------------------------------------------------------------------
# SqlGlotSafetyGuard
# ---------------------------------------------------------------------------


class SqlGlotSafetyGuard:
    """SQLGlot-backed :class:`SqlSafetyGuard` implementation.

    Uses AST-based detection so that keyword obfuscation (odd casing, inline
    comments, nested statements) cannot hide a write from the check.
    """

    def check_read_only(
        self,
        sql: str,
        dialect: Dialect = Dialect.MYSQL,
    ) -> SafetyCheckResult:
        """Check that *sql* is a single read-only query."""
        dialect_str = _dialect_value(dialect)
        violations: list[SafetyViolation] = []

        try:
            statements = [
                s
                for s in sqlglot.parse(sql, read=dialect_str, error_level=ErrorLevel.RAISE)
                if s is not None
            ]
        except SqlglotError as exc:
            logger.warning("SQL safety guard could not parse input: %s", exc)
            return SafetyCheckResult(
                is_safe=False,
                violations=(
                    SafetyViolation(
                        violation_type="UNPARSEABLE",
                        target="",
                        detail=f"SQL could not be parsed for safety analysis: {exc}",
                    ),
                ),
                checked_statements=0,
            )

        if len(statements) != 1:
            violations.append(
                SafetyViolation(
                    violation_type="MULTIPLE_STATEMENTS",
                    target="",
                    detail=f"Expected exactly one statement, found {len(statements)}",
                )
            )

        for statement in statements:
            violations.extend(self._check_statement(statement, dialect_str))

        return SafetyCheckResult(
            is_safe=len(violations) == 0,
            violations=tuple(violations),
            checked_statements=len(statements),
        )

    @staticmethod
    def _check_statement(node: exp.Expression, dialect_str: str) -> list[SafetyViolation]:
        """Inspect a single AST statement for anything that is not a pure read."""
        violations: list[SafetyViolation] = []

        if not isinstance(node, exp.Query):
            violations.append(
                SafetyViolation(
                    violation_type="NOT_A_QUERY",
                    target=type(node).__name__,
                    detail=f"Statement is a {type(node).__name__}, not a query",
                )
            )

        for descendant in node.walk():
            # Older sqlglot releases yield (node, parent, key) tuples.
            if isinstance(descendant, tuple):
                descendant = descendant[0]

            if isinstance(descendant, _FORBIDDEN_NODE_TYPES):
                kind = type(descendant).__name__
                violations.append(
                    SafetyViolation(
                        violation_type=kind.upper(),
                        target=descendant.sql(dialect=dialect_str)[:80],
                        detail=f"{kind} is not permitted in a read-only query",
                    )
                )
                continue

            if _is_placeholder(descendant):
                violations.append(
                    SafetyViolation(
                        violation_type="UNBOUND_PARAMETER",
                        target=descendant.sql(dialect=dialect_str),
                        detail="Query parameters are never bound at execution time",
                    )
                )
                continue

            if isinstance(descendant, exp.Func):
                if isinstance(descendant, exp.Anonymous):
                    fname = descendant.name.lower()
                else:
                    fname = descendant.sql_name().lower()
                if fname in _FORBIDDEN_FUNCTIONS:
                    violations.append(
                        SafetyViolation(
                            violation_type="FORBIDDEN_FUNCTION",
                            target=fname,
                            detail=f"Function {fname.upper()} is not permitted",
                        )
                    )

        return violations


# ---------------------------------------------------------------------------
# SqlGlotToolkit (composite)
# ---------------------------------------------------------------------------


class SqlGlotToolkit:
    """Composite :class:`SqlToolkit` backed by SQLGlot.

    This is the default implementation returned by :func:`get_sql_toolkit`.
    """

    def __init__(self) -> None:
        self._scope_analyzer = SqlGlotScopeAnalyzer()
        self._safety_guard = SqlGlotSafetyGuard()

    @property
    def scope_analyzer(self) -> SqlGlotScopeAnalyzer:
        return self._scope_analyzer

    @property
    def safety_guard(self) -> SqlGlotSafetyGuard:
        return self._safety_guard
