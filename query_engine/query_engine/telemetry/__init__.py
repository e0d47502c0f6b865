"""Logging setup for the query engine."""

from __future__ import annotations

from query_engine.telemetry.logging import JSONFormatter, configure_logging

__all__ = ["JSONFormatter", "configure_logging"]
