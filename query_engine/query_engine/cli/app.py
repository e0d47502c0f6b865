"""Query engine CLI -- Typer-based operator interface.

Provides commands to ask a question end to end, to check a SQL statement
against the validator, and to inspect the schema exposed to the generator.
Human-readable output goes to *stderr* via Rich; ``--json`` writes
machine-readable results to *stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import sys

import typer
from rich.console import Console
from rich.markup import escape

from query_engine.cli.display import display_query_result, display_schema, display_validation
from query_engine.config import QuerySettings, load_settings
from query_engine.models.query import DynamicQueryResult, ReportFormat
from query_engine.models.schema import SchemaSnapshot
from query_engine.parser.query_validator import QueryValidator
from query_engine.schema.provider import SchemaProvider
from query_engine.services.dynamic_query_service import EMAIL_CHANNEL, DynamicQueryService
from query_engine.state.database import get_engine
from query_engine.telemetry.logging import configure_logging

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="query-engine",
    help="Store query engine - ask questions of the store database in plain language.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode


def _settings() -> QuerySettings:
    try:
        settings = load_settings()
    except Exception as exc:
        console.print(f"[red]Invalid configuration: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc
    configure_logging(settings)
    return settings


# ---------------------------------------------------------------------------
# Async runners
# ---------------------------------------------------------------------------


async def _ask(
    settings: QuerySettings,
    request: str,
    store_id: int,
    output_format: str,
    email: str | None,
) -> DynamicQueryResult:
    service = DynamicQueryService.from_settings(settings)
    try:
        return await service.run(
            request,
            store_id,
            output_format=output_format,
            delivery_channel=EMAIL_CHANNEL if email else None,
            delivery_address=email,
        )
    finally:
        await service.aclose()


async def _schema(settings: QuerySettings, store_id: int) -> SchemaSnapshot:
    engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    try:
        provider = SchemaProvider(
            engine,
            settings.allowed_tables,
            settings.blocked_columns,
            ttl_seconds=settings.schema_cache_ttl_seconds,
        )
        return await provider.get_schema(store_id)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------


@app.command()
def ask(
    request: str = typer.Argument(..., help="The question to answer, in plain language."),
    store: int = typer.Option(..., "--store", "-s", help="Store id the query is scoped to."),
    output_format: ReportFormat = typer.Option(
        ReportFormat.DISPLAY,
        "--format",
        "-f",
        help="Report format.",
        case_sensitive=False,
    ),
    email: str | None = typer.Option(None, "--email", help="Also email the report to this address."),
) -> None:
    """Generate, validate and run a query for a plain-language request."""
    settings = _settings()

    try:
        result = asyncio.run(_ask(settings, request, store, output_format.value, email))
    except Exception as exc:
        console.print(f"[red]Error running query: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        sys.stdout.write(result.model_dump_json() + "\n")
    else:
        display_query_result(console, result)

    if not result.success:
        raise typer.Exit(code=3)


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


@app.command()
def validate(
    sql: str = typer.Argument(..., help="SQL statement to check."),
    store: int = typer.Option(..., "--store", "-s", help="Store id the query is scoped to."),
) -> None:
    """Check a SQL statement and print the store-scoped rewrite."""
    settings = _settings()
    validator = QueryValidator(
        settings.allowed_tables,
        max_rows=settings.max_rows,
        dialect=settings.sql_dialect,
    )
    result = validator.validate(sql, store)

    if _json_output:
        sys.stdout.write(result.model_dump_json() + "\n")
    else:
        display_validation(console, result)

    if not result.valid:
        raise typer.Exit(code=3)


# ---------------------------------------------------------------------------
# schema
# ---------------------------------------------------------------------------


@app.command()
def schema(
    store: int = typer.Option(..., "--store", "-s", help="Store id to build the schema for."),
) -> None:
    """Show the schema exposed to the query generator."""
    settings = _settings()

    try:
        snapshot = asyncio.run(_schema(settings, store))
    except Exception as exc:
        console.print(f"[red]Failed to introspect schema: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        sys.stdout.write(snapshot.model_dump_json() + "\n")
    else:
        display_schema(console, snapshot)
