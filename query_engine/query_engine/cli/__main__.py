"""Entry point for `python -m query_engine.cli` and `query-engine` console script."""

from __future__ import annotations

from query_engine.cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
