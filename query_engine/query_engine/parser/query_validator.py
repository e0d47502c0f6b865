"""Safety validation for model-generated SQL.

This is the boundary between untrusted generator output and the production
multi-tenant database.  A statement passes only if it is a single read-only
query over allowlisted tables, scoped to exactly one store, and capped at the
configured row limit.

Validation runs in stages and stops at the first failing stage:

1. Comment stripping and normalisation.
2. Dangerous keyword rejection (whole-word, case-insensitive).
3. Statement shape: must start with ``SELECT`` or ``WITH``.
4. Lexical table allowlist over ``FROM`` / ``JOIN`` targets.
5. Store pinning: every literal or placeholder ``store_id`` comparison is
   rewritten to the requesting store.
6. Structural checks on the parsed statement (single statement, no write,
   DDL, session or export constructs, no placeholder left unbound, every
   referenced table allowlisted).
7. Store scoping: the outermost query must filter its primary table by
   ``store_id``; the clause is injected when missing and re-verified.
8. Row cap.

The lexical stages are a fast first pass with stable error messages.  The
structural stage catches what regular expressions cannot see, such as comma
joins, nested statements and keywords disguised by quoting.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable

from query_engine.models.query import ValidationResult
from query_engine.parser.row_limit import apply_row_limit
from query_engine.sql_toolkit import (
    ColumnFilterResult,
    Dialect,
    SqlToolkitError,
    TableRef,
    get_sql_toolkit,
)

logger = logging.getLogger(__name__)

STORE_COLUMN = "store_id"

DANGEROUS_KEYWORDS: tuple[str, ...] = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "REPLACE",
    "RENAME",
    "GRANT",
    "REVOKE",
    "LOCK",
    "UNLOCK",
    "LOAD",
    "CALL",
    "EXECUTE",
    "EXEC",
    "SET",
    "SLEEP",
    "BENCHMARK",
    "INTO OUTFILE",
    "INTO DUMPFILE",
)

_KEYWORD_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (kw, re.compile(r"\b" + kw.replace(" ", r"\s+") + r"\b")) for kw in DANGEROUS_KEYWORDS
)

_LINE_COMMENT = re.compile(r"--.*$", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_WHITESPACE = re.compile(r"\s+")
_SELECT_SHAPE = re.compile(r"^(SELECT|WITH)\s")
_TABLE_TOKEN = re.compile(r"\b(?:FROM|JOIN)\s+([`\"\w.]+)")

# Pinning.  A value is a placeholder or a plain literal; the column may be
# qualified and quoted.
_VALUE = r"(?:\?|%s|%\(\w+\)s|:\w+|'[^']*'|-?\d+(?:\.\d+)?)"
_STORE_COL = r"(?:[`\"]?\w+[`\"]?\.)?[`\"]?store_id[`\"]?"
_PIN_EQ = re.compile(
    rf"(?<![\w.`\"])(?P<col>{_STORE_COL})\s*=\s*(?P<val>{_VALUE})(?![\w.])",
    re.IGNORECASE,
)
_PIN_EQ_REVERSED = re.compile(
    rf"(?<![\w.:'])(?P<val>{_VALUE})\s*=\s*(?P<col>{_STORE_COL})(?![\w`\"])",
    re.IGNORECASE,
)
_PIN_IN = re.compile(
    rf"(?<![\w.`\"])(?P<col>{_STORE_COL})\s+IN\s*\(\s*{_VALUE}(?:\s*,\s*{_VALUE})*\s*\)",
    re.IGNORECASE,
)

# Clause boundaries, searched in text where nested and quoted spans are blanked.
_WHERE = re.compile(r"\bWHERE\b", re.IGNORECASE)
_AFTER_WHERE = re.compile(
    r"\b(?:GROUP\s+BY|HAVING|WINDOW|ORDER\s+BY|LIMIT|OFFSET|FETCH)\b",
    re.IGNORECASE,
)
_INSERT_BEFORE: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE),
    re.compile(r"\bHAVING\b", re.IGNORECASE),
    re.compile(r"\bORDER\s+BY\b", re.IGNORECASE),
    re.compile(r"\bLIMIT\b", re.IGNORECASE),
    re.compile(r"\bOFFSET\b", re.IGNORECASE),
    re.compile(r"\bFETCH\b", re.IGNORECASE),
)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def strip_comments(sql: str) -> str:
    """Remove ``--`` line comments and ``/* */`` block comments."""
    return _BLOCK_COMMENT.sub(" ", _LINE_COMMENT.sub("", sql))


def normalize_sql(sql: str) -> str:
    """Comment-free, whitespace-collapsed, uppercased text for keyword matching."""
    return _WHITESPACE.sub(" ", strip_comments(sql)).strip().upper()


def extract_tables(normalized_sql: str) -> list[str]:
    """Lexically extract ``FROM`` / ``JOIN`` targets, lowercased and de-duplicated."""
    tables: list[str] = []
    for match in _TABLE_TOKEN.finditer(normalized_sql):
        name = match.group(1).replace("`", "").replace('"', "").lower()
        if name and name not in tables:
            tables.append(name)
    return tables


def _mask_nested(sql: str) -> str:
    """Blank out quoted spans and anything inside parentheses.

    The result has the same length as *sql*, so match positions found in it
    map straight back onto the original text.
    """
    out: list[str] = []
    depth = 0
    quote: str | None = None
    for ch in sql:
        if quote is not None:
            out.append(" ")
            if ch == quote:
                quote = None
            continue
        if ch in "'\"`":
            quote = ch
            out.append(" ")
        elif ch == "(":
            depth += 1
            out.append("(" if depth == 1 else " ")
        elif ch == ")":
            depth = max(depth - 1, 0)
            out.append(")" if depth == 0 else " ")
        else:
            out.append(ch if depth == 0 else " ")
    return "".join(out)


def _quoted_flags(sql: str) -> list[bool]:
    """Flag each character that sits inside a quoted span.

    The opening quote itself is not flagged, so a match that begins with a
    quote (``'7' = store_id``, ``"store_id" = 7``) counts as outside.
    """
    flags: list[bool] = []
    quote: str | None = None
    for ch in sql:
        if quote is not None:
            flags.append(True)
            if ch == quote:
                quote = None
            continue
        flags.append(False)
        if ch in "'\"`":
            quote = ch
    return flags


def _sub_outside_quotes(
    pattern: re.Pattern[str], repl: Callable[[re.Match[str]], str], sql: str
) -> str:
    """``pattern.sub`` that leaves matches starting inside a literal untouched."""
    quoted = _quoted_flags(sql)

    def _replace(match: re.Match[str]) -> str:
        if quoted[match.start()]:
            return match.group(0)
        return repl(match)

    return pattern.sub(_replace, sql)


def _normalise_names(names: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for name in names:
        cleaned = name.strip().replace("`", "").replace('"', "").lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


class _Rejected(Exception):
    """Internal short-circuit carrying the rejection reasons."""

    def __init__(self, *errors: str) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class QueryValidator:
    """Validate and rewrite generated SQL so it is safe to execute.

    Parameters
    ----------
    allowed_tables:
        Tables the query may reference.  An empty allowlist rejects every
        query.  Names are matched case-insensitively; schema-qualified
        references must be allowlisted in their qualified form.
    max_rows:
        When set, the validated statement carries a trailing
        ``LIMIT <= max_rows``.
    dialect:
        SQL dialect used for structural parsing.
    """

    def __init__(
        self,
        allowed_tables: Iterable[str],
        *,
        max_rows: int | None = None,
        dialect: Dialect = Dialect.POSTGRES,
    ) -> None:
        if max_rows is not None and max_rows <= 0:
            raise ValueError(f"max_rows must be positive, got {max_rows}")
        self._allowed_tables = _normalise_names(allowed_tables)
        self._max_rows = max_rows
        self._dialect = dialect
        self._toolkit = get_sql_toolkit()

    @property
    def allowed_tables(self) -> list[str]:
        return list(self._allowed_tables)

    # -- public API ---------------------------------------------------------

    def validate(self, sql: str, store_id: int) -> ValidationResult:
        """Validate *sql* for *store_id*.

        Never raises.  On success the returned ``sql`` is the store-scoped,
        row-capped statement; on failure it is the original input.
        """
        try:
            scoped = self._validate(sql, store_id)
        except _Rejected as rejected:
            logger.warning(
                "Rejected dynamic query for store %s: %s",
                store_id,
                "; ".join(rejected.errors),
            )
            return ValidationResult(valid=False, sql=sql, errors=rejected.errors)
        except Exception:
            logger.warning("Dynamic query validation failed unexpectedly", exc_info=True)
            return ValidationResult(
                valid=False, sql=sql, errors=["Query could not be validated"]
            )

        logger.debug("Validated dynamic query for store %s: %s", store_id, scoped)
        return ValidationResult(valid=True, sql=scoped, errors=[])

    # -- stages -------------------------------------------------------------

    def _validate(self, sql: str, store_id: int) -> str:
        if not isinstance(sql, str) or not sql.strip():
            raise _Rejected("Query is empty")
        if isinstance(store_id, bool) or not isinstance(store_id, int):
            raise _Rejected("Invalid store id")
        if not self._allowed_tables:
            raise _Rejected("No tables are allowed for dynamic queries")

        executable = strip_comments(sql).strip().rstrip(";").strip()
        normalized = normalize_sql(executable)
        if not normalized:
            raise _Rejected("Query is empty")

        self._check_keywords(normalized)
        if not _SELECT_SHAPE.match(normalized):
            raise _Rejected("Only SELECT queries are allowed")
        self._check_allowlist(extract_tables(normalized))

        pinned = self._pin_store(executable, store_id)
        self._check_structure(pinned)
        scoped = self._enforce_scoping(pinned, store_id)

        if self._max_rows is not None:
            scoped = apply_row_limit(scoped, self._max_rows)
        return scoped

    @staticmethod
    def _check_keywords(normalized: str) -> None:
        for keyword, pattern in _KEYWORD_PATTERNS:
            if pattern.search(normalized):
                raise _Rejected(f"Dangerous keyword detected: {keyword}")

    def _check_allowlist(self, tables: Iterable[str]) -> None:
        errors = [f"Table not allowed: {t}" for t in tables if t not in self._allowed_tables]
        if errors:
            raise _Rejected(*errors)

    @staticmethod
    def _pin_store(sql: str, store_id: int) -> str:
        """Rewrite every literal or placeholder store comparison to *store_id*.

        Text inside string literals and quoted identifiers is never rewritten.
        """

        def _pin(match: re.Match[str]) -> str:
            return f"{match.group('col')} = {store_id}"

        pinned = sql
        for pattern in (_PIN_IN, _PIN_EQ, _PIN_EQ_REVERSED):
            pinned = _sub_outside_quotes(pattern, _pin, pinned)
        return pinned

    def _check_structure(self, sql: str) -> None:
        safety = self._toolkit.safety_guard.check_read_only(sql, self._dialect)
        if not safety.is_safe:
            errors: list[str] = []
            for violation in safety.violations:
                if violation.violation_type == "UNPARSEABLE":
                    message = "Query could not be parsed"
                elif violation.violation_type == "MULTIPLE_STATEMENTS":
                    message = "Only a single statement is allowed"
                elif violation.violation_type == "UNBOUND_PARAMETER":
                    message = "Query contains unbound parameters"
                else:
                    message = f"Forbidden SQL construct: {violation.violation_type}"
                if message not in errors:
                    errors.append(message)
            raise _Rejected(*errors)

        scope = self._toolkit.scope_analyzer.extract_tables(sql, self._dialect)
        self._check_allowlist(_normalise_names(t.fully_qualified for t in scope.referenced_tables))

    def _enforce_scoping(self, sql: str, store_id: int) -> str:
        analyzer = self._toolkit.scope_analyzer
        filters = analyzer.column_filters(sql, STORE_COLUMN, self._dialect)

        if filters.is_compound:
            raise _Rejected("Compound queries cannot be scoped to a single store")
        if filters.has_placeholders:
            raise _Rejected("Unable to establish store scoping")
        if any(f.value != str(store_id) for f in filters.all_filters):
            raise _Rejected("Query references another store")

        primary = analyzer.primary_table(sql, self._dialect)
        if primary is None:
            raise _Rejected("Unable to establish store scoping")

        if self._is_scoped(filters, primary, store_id):
            return sql

        scoped = inject_scope(sql, f"{primary.reference_name}.{STORE_COLUMN} = {store_id}")
        try:
            rescoped = analyzer.column_filters(scoped, STORE_COLUMN, self._dialect)
        except SqlToolkitError as exc:
            raise _Rejected("Unable to establish store scoping") from exc
        if not self._is_scoped(rescoped, primary, store_id):
            raise _Rejected("Unable to establish store scoping")
        return scoped

    @staticmethod
    def _is_scoped(filters: ColumnFilterResult, primary: TableRef, store_id: int) -> bool:
        qualifiers = {"", primary.reference_name.lower(), primary.name}
        return any(
            f.value == str(store_id) and f.qualifier in qualifiers for f in filters.root_filters
        )


def inject_scope(sql: str, condition: str) -> str:
    """Add *condition* to the outermost query's ``WHERE`` clause.

    An existing condition is parenthesised so that an ``OR`` chain cannot
    escape the new predicate.  Without a ``WHERE``, one is inserted before the
    first trailing clause (``GROUP BY`` through ``FETCH``), or appended.
    Only clause keywords outside parentheses and quotes are considered.
    """
    masked = _mask_nested(sql)

    where = _WHERE.search(masked)
    if where is not None:
        boundary = _AFTER_WHERE.search(masked, where.end())
        end = boundary.start() if boundary else len(sql)
        existing = sql[where.end() : end].strip()
        tail = sql[end:].strip()
        rewritten = f"{sql[: where.start()]}WHERE {condition} AND ({existing})"
        return f"{rewritten} {tail}" if tail else rewritten

    for pattern in _INSERT_BEFORE:
        match = pattern.search(masked)
        if match is not None:
            head = sql[: match.start()].rstrip()
            return f"{head} WHERE {condition} {sql[match.start():]}"

    return f"{sql.rstrip()} WHERE {condition}"
