"""Versioned prompt template registry for LLM interactions.

Every prompt used by the LLM client is registered here as a frozen
dataclass with a version string.  The version is logged alongside every
LLM call so that prompt changes are traceable in the logs without
requiring a database-backed registry.

When a prompt is updated, bump its ``version`` field so that log
correlation is unambiguous.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptTemplate:
    """An immutable, versioned prompt template."""

    key: str
    version: str
    content: str
    description: str


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROMPT_REGISTRY: dict[str, PromptTemplate] = {}


def _register(template: PromptTemplate) -> PromptTemplate:
    """Register a template and return it for module-level assignment."""
    PROMPT_REGISTRY[template.key] = template
    return template


def get_prompt(key: str) -> PromptTemplate:
    """Retrieve a registered prompt template by key.

    Raises
    ------
    KeyError
        If no template is registered under *key*.
    """
    try:
        return PROMPT_REGISTRY[key]
    except KeyError:
        raise KeyError(f"Unknown prompt key '{key}'. Registered keys: {sorted(PROMPT_REGISTRY)}")


# ---------------------------------------------------------------------------
# Registered templates
# ---------------------------------------------------------------------------

GENERATE_SQL_SYSTEM = _register(
    PromptTemplate(
        key="generate_sql_system",
        version="v1",
        content=(
            "You are a SQL analyst for a retail point-of-sale back office.  "
            "Translate the store operator's question into ONE read-only SQL query "
            "against the schema provided.\n"
            "Rules:\n"
            "1. Only generate SELECT queries (a WITH clause is allowed).  Never modify data.\n"
            "2. Always filter the main table by store_id = <the store id given>.\n"
            "3. Use only the tables and columns listed in the schema.\n"
            "4. Use explicit JOIN ... ON syntax, never comma joins.\n"
            "5. Add a sensible ORDER BY.\n"
            "6. Use aggregate functions (SUM, COUNT, AVG, MIN, MAX) with GROUP BY "
            "when the question asks for totals, counts or averages.\n"
            "Respond ONLY with valid JSON: "
            '{"sql": "<the query>", "explanation": "<one sentence for the operator>", '
            '"columns": ["<result column>", ...]}'
        ),
        description="System prompt for natural-language to SQL generation.",
    )
)

GENERATE_SQL_USER = _register(
    PromptTemplate(
        key="generate_sql_user",
        version="v1",
        content=(
            "DATABASE SCHEMA ({dialect}):\n{schema}\n\n"
            "STORE ID: {store_id}\n\n"
            "QUESTION:\n{request}"
        ),
        description="User message carrying the schema, store id and operator question.",
    )
)
