"""Row cap enforcement for read queries.

The cap is applied to the trailing ``LIMIT`` clause of the outermost query.
A ``LIMIT`` inside a subquery never ends the statement text, so it is left
alone and an outer ``LIMIT`` is appended instead.  A trailing standard
``FETCH FIRST`` clause, or a bare ``OFFSET``, is rewritten into the
``LIMIT`` form so the statement never carries two row-limiting clauses.
"""

from __future__ import annotations

import re

# LIMIT n | LIMIT n OFFSET m | LIMIT m, n -- at the very end of the statement.
# The count may be an unbound placeholder, which is replaced by the cap.
_TRAILING_LIMIT = re.compile(
    r"\bLIMIT\s+(?P<first>\d+|\?|%s|:\w+)"
    r"(?:\s*,\s*(?P<second>\d+|\?|%s|:\w+))?"
    r"(?P<offset>\s+OFFSET\s+\d+)?"
    r"\s*;?\s*$",
    re.IGNORECASE,
)

# [OFFSET m ROWS] FETCH {FIRST|NEXT} [n] {ROW|ROWS} ONLY
_TRAILING_FETCH = re.compile(
    r"(?:\bOFFSET\s+(?P<offset>\d+)\s+ROWS?\s+)?"
    r"\bFETCH\s+(?:FIRST|NEXT)\s+(?:(?P<count>\d+)\s+)?ROWS?\s+ONLY"
    r"\s*$",
    re.IGNORECASE,
)

# OFFSET m [ROWS] with no row limit at all.
_TRAILING_OFFSET = re.compile(r"\bOFFSET\s+(?P<offset>\d+)(?:\s+ROWS?)?\s*$", re.IGNORECASE)


def _cap(value: str, max_rows: int) -> int:
    if value.isdigit():
        return min(int(value), max_rows)
    return max_rows


def apply_row_limit(sql: str, max_rows: int) -> str:
    """Return *sql* with exactly one trailing ``LIMIT`` no larger than *max_rows*.

    Parameters
    ----------
    sql:
        A single read statement.  Trailing semicolons are dropped.
    max_rows:
        The operator-configured row ceiling.  Must be positive.

    Returns
    -------
    str
        The rewritten statement.  Applying the function twice yields the
        same result as applying it once.
    """
    if max_rows <= 0:
        raise ValueError(f"max_rows must be positive, got {max_rows}")

    body = sql.strip().rstrip(";").rstrip()
    match = _TRAILING_LIMIT.search(body)
    if match is not None:
        head = body[: match.start()]
        second = match.group("second")
        if second is not None:
            # MySQL form: LIMIT offset, count
            return f"{head}LIMIT {match.group('first')}, {_cap(second, max_rows)}"

        limit = f"LIMIT {_cap(match.group('first'), max_rows)}"
        if match.group("offset"):
            limit += match.group("offset")
        return f"{head}{limit}"

    match = _TRAILING_FETCH.search(body)
    if match is not None:
        # FETCH FIRST ROW ONLY means a single row.
        limit = f"LIMIT {_cap(match.group('count') or '1', max_rows)}"
        if match.group("offset"):
            limit += f" OFFSET {match.group('offset')}"
        return f"{body[: match.start()]}{limit}"

    match = _TRAILING_OFFSET.search(body)
    if match is not None:
        return f"{body[: match.start()]}LIMIT {max_rows} OFFSET {match.group('offset')}"

    return f"{body} LIMIT {max_rows}"
