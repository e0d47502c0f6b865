"""Database engine construction for the store database."""

from query_engine.state.database import get_engine, get_local_engine

__all__ = ["get_engine", "get_local_engine"]
