"""Dispatcher output schema."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class GeneratedResponse(BaseModel):
    """The reply produced for one job.

    Attributes:
        language: Language detected by the model (e.g. "English", "Nepali").
        intent: Classified intent, or "general_chat" / "error" on fallback.
        text: Reply text delivered to the user.
    """

    model_config = ConfigDict(frozen=True)

    language: str
    intent: str
    text: str
