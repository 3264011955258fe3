"""Prompt construction for retrieval-augmented replies."""

from __future__ import annotations

from collections.abc import Sequence

NO_CONTEXT_PLACEHOLDER = "(no context available)"

_PROMPT_TEMPLATE = """\
You are a helpful AI assistant for a business.
Context:
{context}

User Message: "{message}"

Instructions:
1. Detect the language of the user's message (for example Nepali, English, or Mixed).
2. Classify the intent.
3. Answer the user's question using the provided Context. If the answer is not in the context, politely say you don't know.
4. Reply in the SAME language as the user.

Output Format (JSON):
{{
  "language": "Detected Language",
  "intent": "Classified Intent",
  "response": "Your response here"
}}
"""


def format_context(chunks: Sequence[str]) -> str:
    """Number context chunks 1..n, one per line."""
    if not chunks:
        return NO_CONTEXT_PLACEHOLDER
    return "\n".join(f"{i}. {chunk}" for i, chunk in enumerate(chunks, start=1))


def build_prompt(message_text: str, context_chunks: Sequence[str]) -> str:
    """Build the LLM prompt for one inbound message.

    The user text is inserted verbatim; it is never rewritten or stripped
    of suspicious content.

    Args:
        message_text: The user's message.
        context_chunks: Retrieved knowledge, most relevant first.

    Returns:
        The complete prompt string.
    """
    return _PROMPT_TEMPLATE.format(
        context=format_context(context_chunks),
        message=message_text,
    )
