"""Dynamic query orchestration.

Runs Generate -> Validate -> Execute -> Format strictly in sequence, then
optionally hands the report to a delivery channel.  The first failing stage
short-circuits the rest; nothing is retried.

This service is the single point where internal exceptions become the
public failure shape: :meth:`DynamicQueryService.run` never raises.  Delivery
is reported as its own outcome and never changes whether the query
succeeded.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from query_engine.delivery.email import (
    DeliveryError,
    EmailDelivery,
    HttpEmailDelivery,
    build_report_email,
)
from query_engine.engines.llm_client import LLMClient
from query_engine.engines.query_generator import QueryGenerator
from query_engine.executor.query_executor import QueryExecutor
from query_engine.formatter.report_formatter import ReportFormatter
from query_engine.models.query import (
    DeliveryOutcome,
    DynamicQueryResult,
    ExecutionResult,
    FormattedReport,
    GeneratedQuery,
    PipelineStage,
    ReportFormat,
)
from query_engine.parser.query_validator import QueryValidator
from query_engine.schema.provider import SchemaProvider
from query_engine.services.event_bus import EventBus, EventType
from query_engine.state.database import get_engine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from query_engine.config import QuerySettings

logger = logging.getLogger(__name__)

EMAIL_CHANNEL = "email"


class DynamicQueryService:
    """Answer an operator's question with a scoped, read-only query.

    Parameters
    ----------
    generator:
        Produces candidate SQL.  Untrusted.
    validator:
        The only component allowed to approve SQL for execution.
    executor:
        Runs approved SQL with a row cap and timeout.
    formatter:
        Renders rows for the requested channel.
    delivery:
        Optional email sender.  Without one, delivery requests report a
        failed outcome.
    event_bus:
        Optional bus notified when a query completes or fails.
    """

    def __init__(
        self,
        generator: QueryGenerator,
        validator: QueryValidator,
        executor: QueryExecutor,
        formatter: ReportFormatter,
        delivery: EmailDelivery | None = None,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._generator = generator
        self._validator = validator
        self._executor = executor
        self._formatter = formatter
        self._delivery = delivery
        self._event_bus = event_bus
        # Resources built by from_settings; injected ones belong to the caller.
        self._owned_engine: AsyncEngine | None = None
        self._owned_delivery: HttpEmailDelivery | None = None

    @classmethod
    def from_settings(
        cls,
        settings: QuerySettings,
        *,
        engine: AsyncEngine | None = None,
        llm_client: LLMClient | None = None,
        delivery: EmailDelivery | None = None,
        event_bus: EventBus | None = None,
    ) -> DynamicQueryService:
        """Wire the full pipeline from operator settings.

        An engine or email delivery built here is owned by the service and
        released by :meth:`aclose`.  Injected ones are left to the caller.
        """
        owned_engine: AsyncEngine | None = None
        owned_delivery: HttpEmailDelivery | None = None
        if engine is None:
            engine = owned_engine = get_engine(
                settings.database_url,
                settings.database_pool_size,
                settings.database_max_overflow,
                statement_timeout_seconds=settings.query_timeout_seconds,
            )
        schema_provider = SchemaProvider(
            engine,
            settings.allowed_tables,
            settings.blocked_columns,
            ttl_seconds=settings.schema_cache_ttl_seconds,
        )
        if event_bus is not None:
            schema_provider.subscribe(event_bus)

        if delivery is None and settings.is_email_configured():
            delivery = owned_delivery = HttpEmailDelivery(
                settings.email_api_url or "",
                api_key=settings.email_api_key.get_secret_value() if settings.email_api_key else None,
                sender=settings.email_from,
                timeout=settings.email_timeout,
            )

        service = cls(
            generator=QueryGenerator(
                llm_client or LLMClient(settings),
                schema_provider,
                timeout=settings.llm_timeout,
                dialect=settings.sql_dialect,
            ),
            validator=QueryValidator(
                settings.allowed_tables,
                max_rows=settings.max_rows,
                dialect=settings.sql_dialect,
            ),
            executor=QueryExecutor(
                engine,
                max_rows=settings.max_rows,
                timeout_seconds=settings.query_timeout_seconds,
            ),
            formatter=ReportFormatter(),
            delivery=delivery,
            event_bus=event_bus,
        )
        service._owned_engine = owned_engine
        service._owned_delivery = owned_delivery
        return service

    async def aclose(self) -> None:
        """Close the email client and dispose the engine built by :meth:`from_settings`.

        Safe to call more than once.
        """
        delivery, self._owned_delivery = self._owned_delivery, None
        engine, self._owned_engine = self._owned_engine, None
        try:
            if delivery is not None:
                await delivery.close()
        finally:
            if engine is not None:
                await engine.dispose()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run(
        self,
        request: str,
        store_id: int,
        *,
        output_format: ReportFormat | str = ReportFormat.DISPLAY,
        delivery_channel: str | None = None,
        delivery_address: str | None = None,
    ) -> DynamicQueryResult:
        """Run the pipeline for one operator request."""
        if not self._validator.allowed_tables:
            return await self._fail(
                store_id,
                PipelineStage.VALIDATE,
                "Generated SQL failed validation",
                errors=["No tables are allowed for dynamic queries"],
            )

        try:
            generated = await self._generator.generate(request, store_id)
        except Exception:
            logger.exception("Query generation raised", extra=_ctx(store_id, PipelineStage.GENERATE))
            generated = GeneratedQuery.empty()
        if generated.is_empty:
            return await self._fail(store_id, PipelineStage.GENERATE, "Failed to generate SQL")

        try:
            validation = self._validator.validate(generated.sql, store_id)
        except Exception:
            logger.exception("Query validation raised", extra=_ctx(store_id, PipelineStage.VALIDATE))
            return await self._fail(
                store_id,
                PipelineStage.VALIDATE,
                "Generated SQL failed validation",
                errors=["Query could not be validated"],
                explanation=generated.explanation,
            )
        if not validation.valid:
            return await self._fail(
                store_id,
                PipelineStage.VALIDATE,
                "Generated SQL failed validation",
                errors=validation.errors,
                explanation=generated.explanation,
            )

        try:
            execution = await self._executor.execute(validation.sql)
        except Exception:
            logger.exception("Query execution raised", extra=_ctx(store_id, PipelineStage.EXECUTE))
            execution = ExecutionResult(success=False, error="Query execution failed")
        if not execution.success:
            return await self._fail(
                store_id,
                PipelineStage.EXECUTE,
                execution.error or "Query execution failed",
                explanation=generated.explanation,
                sql=validation.sql,
                execution=execution,
            )

        try:
            report = self._formatter.format(
                execution.data, generated.expected_columns, output_format
            )
        except Exception:
            logger.exception("Report formatting raised", extra=_ctx(store_id, PipelineStage.FORMAT))
            return await self._fail(
                store_id,
                PipelineStage.FORMAT,
                "Failed to format results",
                explanation=generated.explanation,
                sql=validation.sql,
                execution=execution,
            )

        delivery = None
        if delivery_channel and delivery_address:
            delivery = await self._deliver(
                delivery_channel,
                delivery_address,
                request,
                generated,
                execution,
                report,
                store_id,
            )

        logger.info(
            "Dynamic query for store %s succeeded: %d row(s)%s",
            store_id,
            execution.row_count,
            " (truncated)" if execution.truncated else "",
            extra=_ctx(store_id, None),
        )
        await self._emit(
            EventType.QUERY_COMPLETED,
            store_id,
            {"row_count": execution.row_count, "truncated": execution.truncated},
        )
        return DynamicQueryResult(
            success=True,
            explanation=generated.explanation,
            sql=validation.sql,
            report=report,
            execution=execution,
            delivery=delivery,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _deliver(
        self,
        channel: str,
        address: str,
        request: str,
        generated: GeneratedQuery,
        execution: ExecutionResult,
        report: FormattedReport,
        store_id: int,
    ) -> DeliveryOutcome:
        if channel != EMAIL_CHANNEL:
            logger.warning("Unsupported delivery channel %r", channel, extra=_ctx(store_id, PipelineStage.DELIVER))
            return DeliveryOutcome(
                channel=channel,
                recipient=address,
                delivered=False,
                error=f"Unsupported delivery channel: {channel}",
            )
        if self._delivery is None:
            return DeliveryOutcome(
                channel=channel,
                recipient=address,
                delivered=False,
                error="Email delivery is not configured",
            )

        try:
            email_report = report
            if report.format is not ReportFormat.EMAIL:
                email_report = self._formatter.format(
                    execution.data, generated.expected_columns, ReportFormat.EMAIL
                )
            csv_report = self._formatter.format(
                execution.data, generated.expected_columns, ReportFormat.CSV
            )
            message = build_report_email(
                address, request, generated.explanation, email_report, csv_report
            )
            await self._delivery.send(message)
        except ValidationError:
            error = "Invalid email address"
        except DeliveryError as exc:
            error = str(exc)
        except Exception:
            logger.exception("Report delivery raised", extra=_ctx(store_id, PipelineStage.DELIVER))
            error = "Delivery failed"
        else:
            return DeliveryOutcome(channel=channel, recipient=address, delivered=True)

        logger.warning(
            "Report delivery for store %s failed: %s",
            store_id,
            error,
            extra=_ctx(store_id, PipelineStage.DELIVER),
        )
        return DeliveryOutcome(channel=channel, recipient=address, delivered=False, error=error)

    async def _fail(
        self,
        store_id: int,
        stage: PipelineStage,
        error: str,
        *,
        errors: list[str] | None = None,
        explanation: str = "",
        sql: str | None = None,
        execution: ExecutionResult | None = None,
    ) -> DynamicQueryResult:
        logger.warning(
            "Dynamic query for store %s failed at %s: %s",
            store_id,
            stage.value,
            error,
            extra=_ctx(store_id, stage),
        )
        await self._emit(EventType.QUERY_FAILED, store_id, {"stage": stage.value})
        return DynamicQueryResult(
            success=False,
            failed_stage=stage,
            error=error,
            errors=list(errors or []),
            explanation=explanation,
            sql=sql,
            execution=execution,
        )

    async def _emit(self, event_type: EventType, store_id: int, data: dict[str, object]) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.emit(event_type, store_id=store_id, data=data)
        except Exception:
            logger.warning("Failed to emit %s", event_type.value, exc_info=True)


def _ctx(store_id: int, stage: PipelineStage | None) -> dict[str, object]:
    """Logging extras picked up by the JSON formatter."""
    extra: dict[str, object] = {"store_id": store_id}
    if stage is not None:
        extra["stage"] = stage.value
    return extra
