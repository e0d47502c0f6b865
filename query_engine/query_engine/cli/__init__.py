"""Command-line interface for the store query engine."""
