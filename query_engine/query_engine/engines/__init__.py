"""LLM-backed SQL generation."""

from query_engine.engines.llm_client import LLMClient, LLMDisabledError
from query_engine.engines.query_generator import QueryGenerator, sanitize_request

__all__ = ["LLMClient", "LLMDisabledError", "QueryGenerator", "sanitize_request"]
