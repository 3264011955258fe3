"""Embedding service for dense (OpenAI) vector generation.

The dispatcher embeds each inbound message with the same model and
dimension that produced the stored knowledge chunks, so query and
stored vectors are always comparable.

Rate limit handling uses exponential backoff on OpenAI API calls.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from openai import AsyncOpenAI, RateLimitError

from src.knowledge.config import KnowledgeBaseConfig

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns text into a fixed-dimension vector."""

    async def embed(self, text: str) -> list[float]: ...


class EmbeddingService:
    """Generates dense embeddings via the OpenAI embeddings API.

    Args:
        config: Knowledge base configuration with API key and model settings.
        client: Optional pre-built AsyncOpenAI client.
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._config = config
        self._openai = client or AsyncOpenAI(api_key=config.openai_api_key)
        self._model = config.embedding_model
        self._dimensions = config.embedding_dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        """Generate a dense embedding for a single text."""
        vectors = await self._embed_dense([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate dense embeddings for a batch of texts in one request.

        Args:
            texts: List of input texts to embed.

        Returns:
            One vector per input text, in input order.
        """
        if not texts:
            return []
        return await self._embed_dense(texts)

    async def _embed_dense(
        self, texts: list[str], max_retries: int = 3
    ) -> list[list[float]]:
        """Generate dense embeddings via OpenAI with exponential backoff.

        Args:
            texts: Input texts to embed.
            max_retries: Maximum retry attempts on rate limit errors.

        Returns:
            List of dense embedding vectors.

        Raises:
            RateLimitError: If all retries are exhausted.
        """
        for attempt in range(max_retries):
            try:
                response = await self._openai.embeddings.create(
                    input=texts,
                    model=self._model,
                    dimensions=self._dimensions,
                )
                return [item.embedding for item in response.data]
            except RateLimitError:
                if attempt == max_retries - 1:
                    raise
                wait_time = 2**attempt
                logger.warning(
                    "OpenAI rate limit hit, retrying in %ds (attempt %d/%d)",
                    wait_time,
                    attempt + 1,
                    max_retries,
                )
                await asyncio.sleep(wait_time)

        raise RuntimeError("Exhausted retries for dense embedding")  # pragma: no cover
