"""Store query engine -- AI-generated, tenant-scoped, read-only SQL reporting."""

__version__ = "0.4.0"
