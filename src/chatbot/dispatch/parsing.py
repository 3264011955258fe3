"""Tolerant parsing of LLM output into a GeneratedResponse.

Models asked for JSON often wrap it in prose or code fences, or emit
something that is almost JSON. The parser looks for the first balanced
``{...}`` span that decodes to a JSON object and falls back to fixed,
well-defined values when none exists.
"""

from __future__ import annotations

import json
from typing import Any

from src.chatbot.dispatch.schemas import GeneratedResponse

DEFAULT_LANGUAGE = "English"
DEFAULT_INTENT = "general"
UNPARSED_INTENT = "general_chat"
ERROR_INTENT = "error"

GREETING_FALLBACK = "I'm here to help! How can I assist you?"
LLM_ERROR_FALLBACK = "I'm having trouble processing your request right now. Please try again."
PROCESSING_FALLBACK = "I'm sorry, I'm having trouble processing your request right now."


def _find_closing_brace(text: str, start: int) -> int | None:
    """Index of the brace closing the one at ``start``, honoring strings."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def extract_json_object(raw: str) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` in ``raw`` that is a JSON object.

    Candidates that are unbalanced or fail to decode are skipped and the
    scan resumes at the next opening brace.
    """
    start = raw.find("{")
    while start != -1:
        end = _find_closing_brace(raw, start)
        if end is not None:
            try:
                value = json.loads(raw[start:end + 1])
            except ValueError:
                value = None
            if isinstance(value, dict):
                return value
        start = raw.find("{", start + 1)
    return None


def _text_field(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_llm_output(raw: str) -> GeneratedResponse:
    """Turn raw model text into a GeneratedResponse. Never raises.

    - JSON object found: blank or missing fields default to
      English / general / the raw text.
    - No object: intent ``general_chat`` with the plain raw text, or the
      greeting when the text is empty or looks like broken JSON.
    """
    data = extract_json_object(raw)
    stripped = raw.strip()

    if data is None:
        text = stripped if stripped and "{" not in stripped else GREETING_FALLBACK
        return GeneratedResponse(language=DEFAULT_LANGUAGE, intent=UNPARSED_INTENT, text=text)

    return GeneratedResponse(
        language=_text_field(data, "language") or DEFAULT_LANGUAGE,
        intent=_text_field(data, "intent") or DEFAULT_INTENT,
        text=_text_field(data, "response") or stripped,
    )


def llm_error_response() -> GeneratedResponse:
    """Reply used when the LLM call fails or times out."""
    return GeneratedResponse(language=DEFAULT_LANGUAGE, intent=ERROR_INTENT, text=LLM_ERROR_FALLBACK)


def processing_error_response() -> GeneratedResponse:
    """Reply used when processing fails outside the LLM stage."""
    return GeneratedResponse(language=DEFAULT_LANGUAGE, intent=ERROR_INTENT, text=PROCESSING_FALLBACK)
