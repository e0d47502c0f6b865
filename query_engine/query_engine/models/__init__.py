"""Domain models for the store query engine."""

from query_engine.models.query import (
    DeliveryOutcome,
    DynamicQueryResult,
    ExecutionResult,
    FormattedReport,
    GeneratedQuery,
    PipelineStage,
    ReportFormat,
    ValidationResult,
)
from query_engine.models.schema import (
    ColumnInfo,
    ForeignKeyInfo,
    IndexInfo,
    SchemaSnapshot,
    TableSchema,
)

__all__ = [
    "ColumnInfo",
    "DeliveryOutcome",
    "DynamicQueryResult",
    "ExecutionResult",
    "ForeignKeyInfo",
    "FormattedReport",
    "GeneratedQuery",
    "IndexInfo",
    "PipelineStage",
    "ReportFormat",
    "SchemaSnapshot",
    "TableSchema",
    "ValidationResult",
]
