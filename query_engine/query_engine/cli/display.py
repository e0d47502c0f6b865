"""Rich output formatting for the query engine CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from rich.console import Console

    from query_engine.models.query import DynamicQueryResult, ValidationResult
    from query_engine.models.schema import SchemaSnapshot

_MAX_DISPLAY_ROWS = 50


# ---------------------------------------------------------------------------
# Query result
# ---------------------------------------------------------------------------


def display_query_result(console: Console, result: DynamicQueryResult) -> None:
    """Render the outcome of one pipeline run.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    result:
        The pipeline result to display.
    """
    if not result.success:
        stage = result.failed_stage.value if result.failed_stage else "unknown"
        lines = [f"[bold]Stage:[/bold] {stage}", f"[bold]Error:[/bold] {escape(result.error or '')}"]
        lines.extend(f"  - {escape(err)}" for err in result.errors)
        console.print(Panel("\n".join(lines), title="Query failed", border_style="red"))
        return

    if result.explanation:
        console.print(f"[dim]{escape(result.explanation)}[/dim]")

    report = result.report
    if report is not None and isinstance(report.content, dict):
        headers = report.content.get("headers", [])
        rows = report.content.get("rows", [])
        table = Table(title=report.summary, show_lines=False, pad_edge=True, expand=False)
        for header in headers:
            table.add_column(str(header))
        for row in rows[:_MAX_DISPLAY_ROWS]:
            table.add_row(*(escape(str(row.get(h, "-"))) for h in headers))
        console.print(table)
        if len(rows) > _MAX_DISPLAY_ROWS:
            console.print(f"[dim]... {len(rows) - _MAX_DISPLAY_ROWS} more row(s) not shown[/dim]")
    elif report is not None:
        console.print(escape(str(report.content)) or f"[dim]{report.summary}[/dim]")

    if result.execution is not None and result.execution.truncated:
        console.print("[yellow]Results were truncated at the row limit.[/yellow]")

    if result.delivery is not None:
        if result.delivery.delivered:
            console.print(f"[green]Report sent to {result.delivery.recipient}[/green]")
        else:
            console.print(f"[red]Delivery failed: {escape(result.delivery.error or '')}[/red]")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def display_validation(console: Console, result: ValidationResult) -> None:
    """Render a validator verdict with the rewritten SQL or the errors."""
    if result.valid:
        console.print(Panel(escape(result.sql), title="[green]Valid[/green]", border_style="green"))
        return
    console.print(
        Panel(
            "\n".join(f"- {escape(err)}" for err in result.errors),
            title="[red]Rejected[/red]",
            border_style="red",
        )
    )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def display_schema(console: Console, snapshot: SchemaSnapshot) -> None:
    """Render one table per exposed database table."""
    if snapshot.is_empty():
        console.print("[dim]No allowed tables are available.[/dim]")
        return

    for name, table_schema in snapshot.tables.items():
        table = Table(title=name, show_lines=False, pad_edge=True, expand=False)
        table.add_column("Column", style="bold")
        table.add_column("Type")
        table.add_column("Nullable")
        for col_name, col in table_schema.columns.items():
            table.add_row(col_name, col.type, "yes" if col.nullable else "no")
        console.print(table)
        for fk in table_schema.foreign_keys:
            console.print(
                f"  [dim]{', '.join(fk.columns)} -> "
                f"{fk.foreign_table}.{', '.join(fk.foreign_columns)}[/dim]"
            )
