"""Message dispatch: RAG prompt construction, LLM call, tolerant parsing.

Exports:
    Dispatcher: Per-job processor run by each tenant worker.
    GeneratedResponse: The reply produced for one job.
    build_prompt: Prompt builder for a message plus context chunks.
    parse_llm_output: Tolerant parser from raw model text to a reply.
"""

from __future__ import annotations

from src.chatbot.dispatch.parsing import parse_llm_output
from src.chatbot.dispatch.prompts import build_prompt
from src.chatbot.dispatch.schemas import GeneratedResponse

__all__ = [
    "Dispatcher",
    "GeneratedResponse",
    "build_prompt",
    "parse_llm_output",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the Dispatcher to keep service imports out of parsing tests."""
    if name == "Dispatcher":
        from src.chatbot.dispatch.dispatcher import Dispatcher

        return Dispatcher
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
