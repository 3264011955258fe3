"""Inbound payload validation and normalization.

Turns the raw JSON body posted to /intake into a NormalizedMessage.
Checks run in a fixed order and the first failure wins, so callers
always see the same error for the same malformed payload.
"""

from __future__ import annotations

from typing import Any

from src.chatbot.config import get_settings
from src.chatbot.core.errors import ValidationError
from src.chatbot.queue.schemas import NormalizedMessage

# (payload key, error message) in evaluation order
_REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("agent_id", "Missing or invalid agent_id"),
    ("user_id", "Missing or invalid user_id"),
    ("text", "Missing or invalid text"),
    ("timestamp", "Missing or invalid timestamp"),
)


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def validate_payload(raw: Any, default_platform: str | None = None) -> NormalizedMessage:
    """Validate a raw inbound payload and build a NormalizedMessage.

    Args:
        raw: Decoded JSON body.
        default_platform: Platform used when the payload names none.
            Falls back to the DEFAULT_PLATFORM setting.

    Returns:
        The normalized, immutable message record.

    Raises:
        ValidationError: On the first failing check.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Invalid request body", field="body")

    for key, message in _REQUIRED_FIELDS:
        if not _is_non_empty_string(raw.get(key)):
            raise ValidationError(message, field=key)

    media = raw.get("media")
    if media is None:
        media = []
    elif not isinstance(media, list) or not all(isinstance(m, str) for m in media):
        raise ValidationError("Invalid media format", field="media")

    platform = raw.get("platform")
    if platform is None:
        platform = default_platform or get_settings().DEFAULT_PLATFORM
    elif not _is_non_empty_string(platform):
        raise ValidationError("Invalid platform format", field="platform")

    return NormalizedMessage(
        tenant_id=raw["agent_id"],
        user_id=raw["user_id"],
        text=raw["text"],
        media=tuple(media),
        timestamp=raw["timestamp"],
        platform=platform,
    )
