"""Report rendering for display, voice, email and CSV channels."""

from query_engine.formatter.report_formatter import (
    ReportFormatter,
    build_html_table,
    format_value,
    readable_key,
    summarize,
)

__all__ = [
    "ReportFormatter",
    "build_html_table",
    "format_value",
    "readable_key",
    "summarize",
]
