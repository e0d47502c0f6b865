"""Driver error sanitization.

Raw driver messages can carry file system paths, host addresses and the
statement text.  None of that may reach an operator, so every execution
error is reduced to a short, leak-free message before it is returned.
"""

from __future__ import annotations

import re

from sqlalchemy.exc import StatementError

MAX_ERROR_LENGTH = 200

_GENERIC_ERROR = "Query execution failed"

# -- scrub patterns ----------------------------------------------------------

_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # SQLAlchemy appends "[SQL: ...]", "[parameters: ...]" and a help link.
    (re.compile(r"\[SQL:.*?\](?=\s*(?:\[|\(Background|$))", re.DOTALL), ""),
    (re.compile(r"\[parameters:.*?\]", re.DOTALL), ""),
    (re.compile(r"\(Background on this error at:.*?\)", re.DOTALL), ""),
    # Windows and POSIX absolute paths.
    (re.compile(r"\b[A-Za-z]:\\[^\s'\"]*"), "[path]"),
    (re.compile(r"(?<![\w.])/(?:[\w.\-]+/)*[\w.\-]+"), "[path]"),
    # IPv4, with an optional port.
    (re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?\b"), "[ip]"),
]

_WHITESPACE = re.compile(r"\s+")


def _driver_message(exc: BaseException) -> str:
    # DBAPIError and friends wrap the driver exception in ``orig``.
    if isinstance(exc, StatementError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc)


def sanitize_error_message(exc: BaseException, sql: str | None = None) -> str:
    """Return a short operator-safe description of *exc*.

    Parameters
    ----------
    exc:
        The exception raised while executing a statement.
    sql:
        The statement that failed.  Any verbatim occurrence is removed.

    Returns
    -------
    str
        At most :data:`MAX_ERROR_LENGTH` characters, never empty.
    """
    message = _driver_message(exc)
    if sql:
        message = message.replace(sql, "")
    for pattern, replacement in _SCRUB_PATTERNS:
        message = pattern.sub(replacement, message)
    message = _WHITESPACE.sub(" ", message).strip(" :")

    if not message:
        message = _GENERIC_ERROR
    if len(message) > MAX_ERROR_LENGTH:
        message = message[: MAX_ERROR_LENGTH - 3].rstrip() + "..."
    return message
