"""Per-store schema introspection and prompt rendering."""

from query_engine.schema.provider import SchemaProvider, render_schema

__all__ = ["SchemaProvider", "render_schema"]
