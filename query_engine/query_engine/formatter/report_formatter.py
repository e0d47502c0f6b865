"""Channel-specific rendering of query result rows.

:class:`ReportFormatter` is pure: it never touches the database and every
format accepts empty input.  The same rows always render to the same output.
"""

from __future__ import annotations

import csv
import html
import io
import logging
import math
import re
from collections.abc import Mapping, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

from query_engine.models.query import FormattedReport, ReportFormat

logger = logging.getLogger(__name__)

VOICE_MAX_RESULTS = 5
VOICE_MAX_COLUMNS = 4

_CSV_DANGEROUS_CHARS = frozenset("=+-@\t\r")
_DECIMAL_STRING = re.compile(r"^[+-]?\d*\.\d+$|^[+-]?\d+\.\d*$")

# -- HTML table styling (inline, no external stylesheet) ----------------------

_TABLE_STYLE = "width: 100%; border-collapse: collapse; font-size: 14px;"
_HEAD_ROW_STYLE = "background-color: #f3f4f6;"
_TH_STYLE = (
    "padding: 12px; text-align: left; border-bottom: 2px solid #e5e7eb; "
    "font-weight: 600; color: #374151;"
)
_TD_STYLE = "padding: 12px; border-bottom: 1px solid #e5e7eb; color: #1f2937;"
_ROW_BACKGROUNDS = ("#ffffff", "#f9fafb")

Row = Mapping[str, Any]


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _as_money(value: Any) -> Decimal | None:
    """Return *value* as a Decimal when it should be shown as currency.

    Only floats, fractional Decimals and decimal-point strings qualify;
    integers never do.  The value must be finite, have a magnitude of at least 1 and no
    more than two meaningful decimal places.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        number = Decimal(repr(value))
    elif isinstance(value, Decimal):
        # Decimals without a fractional part are integral columns.
        if not value.is_finite() or value.as_tuple().exponent >= 0:
            return None
        number = value
    elif isinstance(value, str) and _DECIMAL_STRING.match(value.strip()):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None

    try:
        if abs(number) < 1 or number != number.quantize(Decimal("0.01")):
            return None
    except InvalidOperation:
        return None
    return number


def format_value(value: Any) -> str:
    """Coerce a scalar result value to its display string."""
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "Yes" if value else "No"

    money = _as_money(value)
    if money is not None:
        sign = "-" if money < 0 else ""
        return f"{sign}${abs(money):,.2f}"

    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def readable_key(key: str) -> str:
    """``order_total`` -> ``Order Total``."""
    return " ".join(word[:1].upper() + word[1:] for word in str(key).replace("_", " ").split(" "))


def summarize(count: int) -> str:
    if count == 0:
        return "No results found"
    if count == 1:
        return "1 result found"
    return f"{count} results found"


def _sanitize_csv_value(value: Any) -> Any:
    """Prevent CSV formula injection by prefixing dangerous values.

    Cells starting with ``=``, ``+``, ``-``, ``@``, ``\\t``, or ``\\r``
    are interpreted as formulas by spreadsheet applications.  Prefixing
    with a single-quote neutralises this while keeping the value readable.
    """
    if isinstance(value, str) and value and value[0] in _CSV_DANGEROUS_CHARS:
        return "'" + value
    return value


def _csv_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return _sanitize_csv_value(value)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class ReportFormatter:
    """Render rows as display, voice, email, csv or summary output."""

    def format(
        self,
        rows: Sequence[Row],
        expected_columns: Sequence[str] = (),
        fmt: ReportFormat | str = ReportFormat.DISPLAY,
    ) -> FormattedReport:
        """Render *rows* in *fmt*.  Unknown formats fall back to display."""
        try:
            resolved = ReportFormat(fmt)
        except ValueError:
            logger.debug("Unknown report format %r; using display", fmt)
            resolved = ReportFormat.DISPLAY

        rows = list(rows)
        if resolved is ReportFormat.VOICE:
            return self._voice(rows)
        if resolved is ReportFormat.EMAIL:
            return self._email(rows, expected_columns)
        if resolved is ReportFormat.CSV:
            return self._csv(rows)
        if resolved is ReportFormat.SUMMARY:
            summary = summarize(len(rows))
            return FormattedReport(format=ReportFormat.SUMMARY, content=summary, summary=summary)
        return self._display(rows, expected_columns)

    # -- variants -----------------------------------------------------------

    @staticmethod
    def _table(rows: list[Row], expected_columns: Sequence[str]) -> dict[str, Any]:
        headers = list(rows[0].keys()) if rows else list(expected_columns)
        display_rows = [{k: format_value(v) for k, v in row.items()} for row in rows]
        return {"headers": headers, "rows": display_rows}

    def _display(self, rows: list[Row], expected_columns: Sequence[str]) -> FormattedReport:
        return FormattedReport(
            format=ReportFormat.DISPLAY,
            content=self._table(rows, expected_columns),
            summary=summarize(len(rows)),
        )

    def _voice(self, rows: list[Row]) -> FormattedReport:
        count = len(rows)
        if count == 0:
            return FormattedReport(
                format=ReportFormat.VOICE,
                content="No results found for your query.",
                summary="No results",
            )

        lines = ["I found 1 result." if count == 1 else f"I found {count} results."]
        spoken = min(count, VOICE_MAX_RESULTS)
        for position, row in enumerate(rows[:spoken], start=1):
            parts = [f"{readable_key(k)}: {format_value(v)}" for k, v in row.items()]
            lines.append(f"Result {position}: {', '.join(parts[:VOICE_MAX_COLUMNS])}.")
        if count > spoken:
            lines.append(f"And {count - spoken} more results.")

        return FormattedReport(
            format=ReportFormat.VOICE,
            content=" ".join(lines),
            summary=summarize(count),
        )

    def _email(self, rows: list[Row], expected_columns: Sequence[str]) -> FormattedReport:
        content = self._table(rows, expected_columns)
        content["html_table"] = build_html_table(content["headers"], content["rows"])
        return FormattedReport(
            format=ReportFormat.EMAIL,
            content=content,
            summary=summarize(len(rows)),
        )

    @staticmethod
    def _csv(rows: list[Row]) -> FormattedReport:
        if not rows:
            return FormattedReport(format=ReportFormat.CSV, content="", summary="No results")

        output = io.StringIO()
        fieldnames = list(rows[0].keys())
        writer = csv.writer(output, lineterminator="\r\n")
        writer.writerow([_sanitize_csv_value(name) for name in fieldnames])
        for row in rows:
            writer.writerow([_csv_cell(row.get(k)) for k in fieldnames])

        return FormattedReport(
            format=ReportFormat.CSV,
            content=output.getvalue(),
            summary=summarize(len(rows)),
        )


def build_html_table(headers: Sequence[str], rows: Sequence[Mapping[str, str]]) -> str:
    """Render a self-contained, inline-styled HTML table with striped rows."""
    parts = [f'<table style="{_TABLE_STYLE}">', f'<thead><tr style="{_HEAD_ROW_STYLE}">']
    for header in headers:
        parts.append(f'<th style="{_TH_STYLE}">{html.escape(readable_key(header))}</th>')
    parts.append("</tr></thead><tbody>")

    for index, row in enumerate(rows):
        parts.append(f'<tr style="background-color: {_ROW_BACKGROUNDS[index % 2]};">')
        for value in row.values():
            parts.append(f'<td style="{_TD_STYLE}">{html.escape(str(value))}</td>')
        parts.append("</tr>")

    parts.append("</tbody></table>")
    return "".join(parts)
