"""Tests for the query-engine Typer CLI.

Uses typer.testing.CliRunner.  The async runners (``_ask`` and ``_schema``)
are patched on ``query_engine.cli.app`` so no database or LLM is needed;
``validate`` runs the real validator against settings from the environment.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from query_engine.cli.app import _ask, app
from query_engine.config import QuerySettings
from query_engine.models.query import (
    DeliveryOutcome,
    DynamicQueryResult,
    ExecutionResult,
    FormattedReport,
    PipelineStage,
    ReportFormat,
)
from query_engine.models.schema import ColumnInfo, SchemaSnapshot, TableSchema
from query_engine.services.dynamic_query_service import DynamicQueryService

runner = CliRunner()


@pytest.fixture(autouse=True)
def _cli_env(monkeypatch, tmp_path):
    """Isolate settings and keep the CLI from reconfiguring root logging."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DYNAMIC_QUERY_ALLOWED_TABLES", '["orders", "customers"]')
    with patch("query_engine.cli.app.configure_logging"):
        yield


def _success_result(**overrides) -> DynamicQueryResult:
    fields = {
        "success": True,
        "explanation": "Revenue for the last week.",
        "sql": "SELECT day, revenue FROM orders WHERE store_id = 42 LIMIT 1000",
        "report": FormattedReport(
            format=ReportFormat.DISPLAY,
            content={"headers": ["day", "revenue"], "rows": [{"day": "2025-05-01", "revenue": "$19.99"}]},
            summary="1 result found",
        ),
        "execution": ExecutionResult(success=True, data=[{"day": "2025-05-01", "revenue": 19.99}], row_count=1),
    }
    fields.update(overrides)
    return DynamicQueryResult(**fields)


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------


class TestAsk:
    def test_json_output(self):
        mock_ask = AsyncMock(return_value=_success_result())
        with patch("query_engine.cli.app._ask", mock_ask):
            result = runner.invoke(app, ["--json", "ask", "revenue last week", "--store", "42"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout.strip().splitlines()[-1])
        assert payload["success"] is True
        assert payload["execution"]["row_count"] == 1

        settings, request, store_id, output_format, email = mock_ask.call_args.args
        assert request == "revenue last week"
        assert store_id == 42
        assert output_format == "display"
        assert email is None
        assert settings.allowed_tables == ["orders", "customers"]

    def test_display_output(self):
        with patch("query_engine.cli.app._ask", AsyncMock(return_value=_success_result())):
            result = runner.invoke(app, ["ask", "revenue last week", "-s", "42"])

        assert result.exit_code == 0, result.output
        assert "Revenue for the last week." in result.output
        assert "2025-05-01" in result.output
        assert "$19.99" in result.output

    def test_format_and_email_forwarded(self):
        delivered = _success_result(
            report=FormattedReport(format=ReportFormat.VOICE, content="I found 1 result.", summary="1 result found"),
            delivery=DeliveryOutcome(channel="email", recipient="owner@example.com", delivered=True),
        )
        mock_ask = AsyncMock(return_value=delivered)
        with patch("query_engine.cli.app._ask", mock_ask):
            result = runner.invoke(
                app, ["ask", "revenue", "-s", "42", "--format", "VOICE", "--email", "owner@example.com"]
            )

        assert result.exit_code == 0, result.output
        assert "I found 1 result." in result.output
        assert mock_ask.call_args.args[3:] == ("voice", "owner@example.com")

    def test_failure_exits_3(self):
        failed = DynamicQueryResult(
            success=False,
            failed_stage=PipelineStage.VALIDATE,
            error="Generated SQL failed validation",
            errors=["Dangerous keyword detected: DELETE"],
        )
        with patch("query_engine.cli.app._ask", AsyncMock(return_value=failed)):
            result = runner.invoke(app, ["ask", "delete my orders", "-s", "42"])

        assert result.exit_code == 3
        assert "Query failed" in result.output
        assert "Dangerous keyword detected: DELETE" in result.output

    def test_runner_exception_exits_3(self):
        with patch("query_engine.cli.app._ask", AsyncMock(side_effect=RuntimeError("pool exhausted"))):
            result = runner.invoke(app, ["ask", "revenue", "-s", "42"])

        assert result.exit_code == 3
        assert "Error running query" in result.output

    def test_store_required(self):
        result = runner.invoke(app, ["ask", "revenue"])
        assert result.exit_code != 0

    @pytest.mark.asyncio
    async def test_runner_closes_service_after_failure(self):
        service = MagicMock()
        service.run = AsyncMock(side_effect=RuntimeError("pool exhausted"))
        service.aclose = AsyncMock()
        settings = QuerySettings(allowed_tables=["orders"], _env_file=None)

        with patch.object(DynamicQueryService, "from_settings", return_value=service) as from_settings:
            with pytest.raises(RuntimeError):
                await _ask(settings, "revenue", 42, "display", None)

        from_settings.assert_called_once_with(settings)
        service.aclose.assert_awaited_once()


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


class TestValidate:
    def test_valid_json(self):
        result = runner.invoke(app, ["--json", "validate", "SELECT * FROM orders", "--store", "42"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout.strip().splitlines()[-1])
        assert payload == {
            "valid": True,
            "sql": "SELECT * FROM orders WHERE orders.store_id = 42 LIMIT 1000",
            "errors": [],
        }

    def test_valid_display(self):
        result = runner.invoke(app, ["validate", "SELECT id FROM customers", "-s", "7"])
        assert result.exit_code == 0, result.output
        assert "Valid" in result.output

    def test_rejected(self):
        result = runner.invoke(app, ["validate", "DROP TABLE orders", "-s", "42"])

        assert result.exit_code == 3
        assert "Rejected" in result.output
        assert "Dangerous keyword detected: DROP" in result.output

    def test_unlisted_table_json(self):
        result = runner.invoke(app, ["--json", "validate", "SELECT * FROM users", "-s", "42"])

        assert result.exit_code == 3
        payload = json.loads(result.stdout.strip().splitlines()[-1])
        assert payload["errors"] == ["Table not allowed: users"]

    def test_invalid_configuration_exits_3(self, monkeypatch):
        monkeypatch.setenv("DYNAMIC_QUERY_MAX_ROWS", "0")
        result = runner.invoke(app, ["validate", "SELECT * FROM orders", "-s", "42"])

        assert result.exit_code == 3
        assert "Invalid configuration" in result.output


# ---------------------------------------------------------------------------
# schema
# ---------------------------------------------------------------------------


def _snapshot() -> SchemaSnapshot:
    return SchemaSnapshot(
        store_id=42,
        tables={
            "orders": TableSchema(
                name="orders",
                columns={
                    "id": ColumnInfo(type="INTEGER", nullable=False),
                    "status": ColumnInfo(type="VARCHAR(20)"),
                },
            )
        },
    )


class TestSchema:
    def test_display(self):
        with patch("query_engine.cli.app._schema", AsyncMock(return_value=_snapshot())):
            result = runner.invoke(app, ["schema", "--store", "42"])

        assert result.exit_code == 0, result.output
        assert "orders" in result.output
        assert "VARCHAR(20)" in result.output

    def test_json(self):
        with patch("query_engine.cli.app._schema", AsyncMock(return_value=_snapshot())):
            result = runner.invoke(app, ["--json", "schema", "-s", "42"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout.strip().splitlines()[-1])
        assert payload["store_id"] == 42
        assert payload["tables"]["orders"]["columns"]["id"]["nullable"] is False

    def test_empty(self):
        with patch("query_engine.cli.app._schema", AsyncMock(return_value=SchemaSnapshot(store_id=42))):
            result = runner.invoke(app, ["schema", "-s", "42"])

        assert result.exit_code == 0
        assert "No allowed tables are available." in result.output

    def test_introspection_failure(self):
        with patch("query_engine.cli.app._schema", AsyncMock(side_effect=OSError("connection refused"))):
            result = runner.invoke(app, ["schema", "-s", "42"])

        assert result.exit_code == 3
        assert "Failed to introspect schema" in result.output
