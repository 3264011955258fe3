"""LLM backend client.

Provides a tenant-aware client for an Ollama-compatible /api/generate
endpoint with:
- A hard per-call timeout (httpx timeout plus asyncio.wait_for)
- Prometheus instrumentation per model and tenant
- Prompt injection detection for logging and alerting
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx
import structlog

from src.chatbot.config import Settings
from src.chatbot.core.errors import LLMError
from src.chatbot.core.monitoring import track_llm_call

logger = structlog.get_logger(__name__)

# ── Prompt Injection Detection ────────────────────────────────────────────────

# Patterns that indicate prompt injection attempts
_INJECTION_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "instruction_override",
        re.compile(
            r"ignore\s+(all\s+)?previous\s+instructions|"
            r"disregard\s+(all\s+)?(your\s+)?instructions|"
            r"forget\s+(all\s+)?(your\s+)?instructions|"
            r"override\s+(all\s+)?(your\s+)?instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "system_prompt_exfiltration",
        re.compile(
            r"(reveal|show|display|output|print|repeat)\s+(your\s+)?(system\s+prompt|instructions|prompt)|"
            r"repeat\s+everything\s+above|"
            r"what\s+are\s+your\s+instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "output_format_hijacking",
        re.compile(
            r"respond\s+only\s+with|"
            r"set\s+(the\s+)?intent\s+to|"
            r"\"intent\"\s*:",
            re.IGNORECASE,
        ),
    ),
    (
        "control_characters",
        re.compile(
            r"[\x00-\x08\x0b\x0c\x0e-\x1f]{3,}",  # 3+ control chars in sequence
        ),
    ),
]


def detect_prompt_injection(text: str) -> tuple[bool, str | None]:
    """Check text for common prompt injection patterns.

    Args:
        text: The text to analyze.

    Returns:
        Tuple of (is_injection, pattern_name) where pattern_name identifies
        which pattern matched, or None if no injection detected.
    """
    for pattern_name, pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning(
                "prompt_injection_detected",
                pattern=pattern_name,
                text_preview=text[:100],
            )
            return True, pattern_name
    return False, None


# ── LLM Client ────────────────────────────────────────────────────────────────


class LLMClient:
    """Async client for an Ollama-compatible text generation API.

    Args:
        base_url: Backend base URL, e.g. ``http://localhost:11434``.
        model: Model name sent with every request.
        timeout: Seconds before a call is abandoned.
        temperature: Sampling temperature.
        top_p: Nucleus sampling cutoff.
        max_tokens: Generation length cap.
        client: Optional pre-built httpx client (tests, custom transports).
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        timeout: float = 30.0,
        temperature: float = 0.7,
        top_p: float = 0.9,
        max_tokens: int = 500,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._timeout = timeout
        self._options = {
            "temperature": temperature,
            "top_p": top_p,
            "max_tokens": max_tokens,
        }
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMClient:
        return cls(
            settings.LLM_BASE_URL,
            settings.LLM_MODEL,
            timeout=settings.LLM_TIMEOUT,
            temperature=settings.LLM_TEMPERATURE,
            top_p=settings.LLM_TOP_P,
            max_tokens=settings.LLM_MAX_TOKENS,
        )

    @property
    def model(self) -> str:
        return self._model

    def build_request(self, prompt: str) -> dict[str, Any]:
        """Request body for /api/generate."""
        return {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": dict(self._options),
        }

    async def generate(self, prompt: str, tenant_id: str) -> str:
        """Send a prompt and return the model's raw response text.

        Args:
            prompt: Complete prompt string.
            tenant_id: Tenant the call is made for (metrics labelling).

        Returns:
            The ``response`` field of the backend reply, unparsed.

        Raises:
            LLMError: On timeout, transport or HTTP error, or a reply
                without a ``response`` text field.
        """
        async with track_llm_call(self._model, tenant_id):
            try:
                response = await asyncio.wait_for(
                    self._client.post("/api/generate", json=self.build_request(prompt)),
                    timeout=self._timeout,
                )
                response.raise_for_status()
                body = response.json()
            except asyncio.TimeoutError as exc:
                raise LLMError(f"LLM call timed out after {self._timeout}s") from exc
            except (httpx.HTTPError, ValueError) as exc:
                raise LLMError(f"LLM call failed: {exc}") from exc

            text = body.get("response") if isinstance(body, dict) else None
            if not isinstance(text, str):
                raise LLMError("LLM reply has no 'response' text field")

        logger.debug("llm_call_completed", model=self._model, response_chars=len(text))
        return text

    async def aclose(self) -> None:
        await self._client.aclose()
