"""Request-scoped artifacts that flow through the dynamic query pipeline.

Each artifact is created by exactly one stage and owned by the request that
produced it.  Nothing here is persisted.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class GeneratedQuery(BaseModel):
    """Untrusted output of the query generator.

    Never executed directly: the ``sql`` always passes through the validator
    first.  An empty ``sql`` signals that generation failed.
    """

    sql: str = ""
    explanation: str = ""
    expected_columns: list[str] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> GeneratedQuery:
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.sql.strip()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    """Outcome of :meth:`QueryValidator.validate`.

    When ``valid`` is true, ``sql`` is the tenant-scoped, row-capped statement
    and the only string permitted to reach the executor.  When false, ``sql``
    is the original input and ``errors`` explains the rejection.
    """

    valid: bool
    sql: str
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionResult(BaseModel):
    """Outcome of :meth:`QueryExecutor.execute`."""

    success: bool
    data: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    truncated: bool = Field(
        default=False,
        description="True when row_count hit the row cap and more rows may exist.",
    )
    error: str | None = None
    execution_time_ms: int = 0


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class ReportFormat(str, Enum):
    """Channel-specific report representations."""

    DISPLAY = "display"
    VOICE = "voice"
    EMAIL = "email"
    CSV = "csv"
    SUMMARY = "summary"


class FormattedReport(BaseModel):
    """A derived, stateless rendering of query rows for one channel.

    ``content`` depends on ``format``: a ``{"headers", "rows"}`` mapping for
    display, the same plus ``html_table`` for email, and plain text for
    voice, csv and summary.
    """

    format: ReportFormat
    content: Any
    summary: str


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class PipelineStage(str, Enum):
    """Stages of the dynamic query pipeline, in execution order."""

    GENERATE = "generate"
    VALIDATE = "validate"
    EXECUTE = "execute"
    FORMAT = "format"
    DELIVER = "deliver"


class DeliveryOutcome(BaseModel):
    """Result of handing a formatted report to a delivery channel.

    Reported alongside the query outcome, never in place of it.
    """

    channel: str
    recipient: str
    delivered: bool
    error: str | None = None


class DynamicQueryResult(BaseModel):
    """Public result of one trip through the pipeline.

    Always one of success-with-data, success-with-empty-data, or
    failure-with-reason.  ``failed_stage`` names the stage that short-circuited
    the pipeline.  ``delivery`` is independent of ``success``.
    """

    success: bool
    failed_stage: PipelineStage | None = None
    error: str | None = None
    errors: list[str] = Field(default_factory=list)
    explanation: str = ""
    sql: str | None = None
    report: FormattedReport | None = None
    execution: ExecutionResult | None = None
    delivery: DeliveryOutcome | None = None
