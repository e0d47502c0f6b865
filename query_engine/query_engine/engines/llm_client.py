"""Optional LLM integration, fully feature-flagged.

When ``DYNAMIC_QUERY_LLM_ENABLED=false`` (default) every public method
returns *None* and no network calls are made.  When enabled, the client
calls the configured Anthropic model with structured prompts and hard
timeouts.

The client performs no safety enforcement on what the model returns.
Everything it produces is untrusted input to the validator.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, cast

import anthropic

if TYPE_CHECKING:
    from query_engine.config import QuerySettings

logger = logging.getLogger(__name__)


class LLMDisabledError(Exception):
    """Raised when an LLM call is attempted but the feature is disabled."""


class LLMClient:
    """Thin wrapper around the Anthropic SDK with fail-safe semantics."""

    def __init__(self, settings: QuerySettings) -> None:
        self._enabled = settings.llm_enabled
        self._model = settings.llm_model
        self._max_tokens = settings.llm_max_tokens
        self._timeout = settings.llm_timeout
        self._client: Any = None

        if self._enabled:
            api_key = settings.llm_api_key.get_secret_value() if settings.llm_api_key else None
            if not api_key:
                logger.warning("LLM enabled but no API key configured -- generation disabled")
                self._enabled = False
                return
            try:
                self._client = anthropic.Anthropic(api_key=api_key, timeout=self._timeout)
                logger.info(
                    "LLM client initialised (model=%s, timeout=%.1fs)",
                    self._model,
                    self._timeout,
                )
            except Exception:
                logger.warning(
                    "Failed to initialise Anthropic client -- LLM features disabled",
                    exc_info=True,
                )
                self._enabled = False
                self._client = None

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def timeout(self) -> float:
        return self._timeout

    def generate_sql(self, system: str, user: str) -> dict[str, Any] | None:
        """Ask the LLM for a SQL query.

        Returns the parsed JSON object, or *None* when the client is disabled
        or the call fails for any reason.  The shape is not checked here.
        """
        if not self._enabled:
            return None

        try:
            raw = self._call_llm(system, user)
            parsed = self._parse_json(raw)
        except Exception:
            logger.warning("LLM generate_sql failed", exc_info=True)
            return None

        if not isinstance(parsed, dict):
            logger.warning("LLM generate_sql returned %s, expected an object", type(parsed).__name__)
            return None
        return cast("dict[str, Any]", parsed)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _resolve_client(self) -> Any:
        if self._client is not None:
            return self._client
        raise LLMDisabledError("No LLM client available. Set DYNAMIC_QUERY_LLM_API_KEY to enable generation.")

    def _call_llm(self, system: str, user: str) -> str:
        """Execute a single LLM call and return the text response."""
        client = self._resolve_client()

        start = time.monotonic()
        try:
            response = client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=0.0,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return cast(str, response.content[0].text)
        finally:
            logger.info(
                "LLM call completed: model=%s latency_ms=%d",
                self._model,
                int((time.monotonic() - start) * 1000),
            )

    @staticmethod
    def _parse_json(raw: str) -> Any:
        """Best-effort JSON extraction from LLM output."""
        text = raw.strip()
        # Strip markdown fences if present
        if text.startswith("```"):
            first_newline = text.index("\n")
            last_fence = text.rfind("```")
            text = text[first_newline + 1 : last_fence].strip()
        return json.loads(text)
