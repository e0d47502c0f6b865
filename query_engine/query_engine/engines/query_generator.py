"""Natural-language to SQL generation.

The generator embeds the allowlisted schema, the requesting store and the
generation rules in a prompt, asks the LLM for a fixed JSON shape and checks
that shape before trusting any field.  It enforces nothing about the SQL
itself: its output is untrusted and always goes through the validator.

Every failure yields an empty :class:`GeneratedQuery`, never an exception.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError, field_validator

from query_engine.engines.prompts import get_prompt
from query_engine.models.query import GeneratedQuery
from query_engine.sql_toolkit import Dialect

if TYPE_CHECKING:
    from query_engine.engines.llm_client import LLMClient
    from query_engine.schema.provider import SchemaProvider

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

# ---------------------------------------------------------------------------
# Request sanitization
# ---------------------------------------------------------------------------

_PROMPT_INJECTION_PATTERNS = re.compile(
    r"<\|system\|>|<\|user\|>|<\|assistant\|>|"
    r"Human:|Assistant:|"
    r"\[INST\]|\[/INST\]|"
    r"<<SYS>>|<</SYS>>|"
    r"<\|im_start\|>|<\|im_end\|>",
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")  # Keep \n, \t, \r
_MAX_REQUEST_SIZE = 4 * 1024


def sanitize_request(value: str) -> str:
    """Sanitize an operator request before it is embedded in a prompt.

    Strips control characters (preserving newlines and tabs), replaces known
    role and delimiter markers, and truncates oversized input.
    """
    cleaned = _CONTROL_CHARS.sub("", value)
    cleaned = _PROMPT_INJECTION_PATTERNS.sub("[FILTERED]", cleaned)
    if len(cleaned) > _MAX_REQUEST_SIZE:
        cleaned = cleaned[:_MAX_REQUEST_SIZE] + "\n[TRUNCATED: request exceeded 4 KB]"
    return cleaned.strip()


# ---------------------------------------------------------------------------
# Response shape
# ---------------------------------------------------------------------------


class _GenerationPayload(BaseModel):
    """Shape the LLM must return.  Anything else is a generation failure."""

    sql: str = Field(..., min_length=1)
    explanation: str = ""
    columns: list[str] = Field(default_factory=list)

    @field_validator("sql")
    @classmethod
    def sql_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sql must not be blank")
        return v.strip()


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class QueryGenerator:
    """Produce candidate SQL for an operator request.

    Parameters
    ----------
    llm_client:
        Feature-flagged Anthropic client.
    schema_provider:
        Source of the allowlisted schema text.
    timeout:
        Deadline for the whole LLM round trip, enforced in addition to the
        SDK's own HTTP timeout.
    dialect:
        Dialect named in the prompt.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        schema_provider: SchemaProvider,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        dialect: Dialect = Dialect.POSTGRES,
    ) -> None:
        self._llm = llm_client
        self._schema = schema_provider
        self._timeout = timeout
        self._dialect = dialect

    async def generate(self, request: str, store_id: int) -> GeneratedQuery:
        """Generate SQL for *request* on behalf of *store_id*."""
        if not self._llm.enabled:
            logger.warning("Query generation requested but the LLM is disabled")
            return GeneratedQuery.empty()

        question = sanitize_request(request or "")
        if not question:
            logger.warning("Query generation requested with an empty request")
            return GeneratedQuery.empty()

        try:
            schema_text = await self._schema.get_schema_for_prompt(store_id)
        except Exception:
            logger.warning("Failed to load schema for store %s", store_id, exc_info=True)
            return GeneratedQuery.empty()
        if not schema_text:
            logger.warning("No schema available for store %s; skipping generation", store_id)
            return GeneratedQuery.empty()

        system = get_prompt("generate_sql_system")
        user = get_prompt("generate_sql_user")
        message = user.content.format(
            dialect=self._dialect.value,
            schema=schema_text,
            store_id=store_id,
            request=question,
        )
        logger.info(
            "LLM call: prompt_key=%s prompt_version=%s store=%s",
            system.key,
            system.version,
            store_id,
        )

        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._llm.generate_sql, system.content, message),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Query generation timed out after %.1fs", self._timeout)
            return GeneratedQuery.empty()
        except Exception:
            logger.warning("Query generation failed", exc_info=True)
            return GeneratedQuery.empty()

        if raw is None:
            logger.warning("Query generation returned no response (prompt_version=%s)", system.version)
            return GeneratedQuery.empty()

        try:
            payload = _GenerationPayload.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Query generation returned a malformed response: %d error(s)",
                exc.error_count(),
            )
            return GeneratedQuery.empty()

        logger.debug("Generated SQL for store %s: %s", store_id, payload.sql)
        return GeneratedQuery(
            sql=payload.sql,
            explanation=payload.explanation,
            expected_columns=payload.columns,
        )
