"""Schema snapshot models.

A :class:`SchemaSnapshot` is the only description of the database that the
query generator ever sees.  It is built from live introspection, restricted
to the allowlisted tables with blocked columns removed, and is immutable once
produced so that it can be shared safely between concurrent requests.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ColumnInfo(BaseModel):
    """Type and nullability of a single exposed column."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Database type rendered as SQL, e.g. VARCHAR(255).")
    nullable: bool = Field(default=True, description="Whether the column accepts NULL.")


class IndexInfo(BaseModel):
    """A table index, with blocked columns already removed."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    columns: tuple[str, ...] = ()
    unique: bool = False


class ForeignKeyInfo(BaseModel):
    """A foreign key from local columns to columns of another table."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    columns: tuple[str, ...] = Field(..., description="Local column names.")
    foreign_table: str = Field(..., description="Referenced table name.")
    foreign_columns: tuple[str, ...] = Field(..., description="Referenced column names.")


class TableSchema(BaseModel):
    """Exposed structure of one allowlisted table.

    ``columns`` preserves the database's column order.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    columns: dict[str, ColumnInfo] = Field(default_factory=dict)
    indexes: tuple[IndexInfo, ...] = ()
    foreign_keys: tuple[ForeignKeyInfo, ...] = ()


class SchemaSnapshot(BaseModel):
    """Immutable view of every allowlisted table that exists for a store."""

    model_config = ConfigDict(frozen=True)

    store_id: int
    tables: dict[str, TableSchema] = Field(default_factory=dict)
    built_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def table_names(self) -> list[str]:
        return list(self.tables)

    def is_empty(self) -> bool:
        return not self.tables
