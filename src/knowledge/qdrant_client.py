"""Qdrant vector database client with tenant-scoped operations.

Wraps the async Qdrant client to provide:
- Payload-based multi-tenant isolation (tenant_id with is_tenant=true index)
- All-or-nothing bulk loading of pre-embedded chunks
- Top-K cosine retrieval with deterministic tie-breaking by insertion order
- Tenant-wide deletion for offboarding

The tenant isolation model uses Qdrant's recommended payload-based approach:
each point carries a tenant_id field, and every query includes a mandatory
tenant_id filter. The is_tenant=true index configuration creates per-tenant
HNSW sub-indexes for optimal query performance.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    KeywordIndexParams,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    Range,
    VectorParams,
)

from src.chatbot.core.errors import RetrievalError, VectorStoreError
from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.models import KBChunk

logger = logging.getLogger(__name__)

DENSE_VECTOR = "dense"

POINT_ID_NAMESPACE = uuid.UUID("6f1c2a9e-4b7d-5e38-9a41-0c2d8e7f3b56")


def _tenant_filter(tenant_id: str) -> Filter:
    return Filter(
        must=[FieldCondition(key="tenant_id", match=MatchValue(value=tenant_id))]
    )


def point_id(tenant_id: str, chunk_id: str) -> str:
    """Qdrant point id for a chunk, unique per (tenant, chunk id) pair."""
    return str(uuid.uuid5(POINT_ID_NAMESPACE, f"{tenant_id}:{chunk_id}"))


def _score(point: Any) -> float:
    return round(point.score, 9)


class QdrantKnowledgeStore:
    """Tenant-scoped vector store backed by Qdrant.

    All operations require a tenant_id parameter and enforce tenant isolation
    at the query level. Every point carries a ``seq`` payload value assigned
    at load time; retrieval uses it to order equally similar chunks by
    insertion order.

    Args:
        config: Knowledge base configuration.
        client: Optional pre-built async client (tests, shared connections).
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        self._config = config
        self._collection = config.collection_knowledge
        self._dimensions = config.embedding_dimensions
        self._last_seq = 0

        # Initialize Qdrant client: remote if URL provided, local otherwise
        if client is not None:
            self._client = client
        elif config.qdrant_url:
            self._client = AsyncQdrantClient(
                url=config.qdrant_url,
                api_key=config.qdrant_api_key,
            )
        elif config.qdrant_path == ":memory:":
            self._client = AsyncQdrantClient(location=":memory:")
        else:
            self._client = AsyncQdrantClient(path=config.qdrant_path)

    @property
    def client(self) -> AsyncQdrantClient:
        """Expose the underlying Qdrant client for advanced operations."""
        return self._client

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def initialize(self) -> None:
        """Create the knowledge collection and payload indexes if missing."""
        if await self._client.collection_exists(self._collection):
            logger.info("Collection %s already exists, skipping creation", self._collection)
            return

        await self._client.create_collection(
            collection_name=self._collection,
            vectors_config={
                DENSE_VECTOR: VectorParams(
                    size=self._dimensions,
                    distance=Distance.COSINE,
                ),
            },
        )

        # tenant_id with is_tenant=True for per-tenant HNSW indexes
        await self._client.create_payload_index(
            collection_name=self._collection,
            field_name="tenant_id",
            field_schema=KeywordIndexParams(
                type="keyword",
                is_tenant=True,
            ),
        )
        await self._client.create_payload_index(
            collection_name=self._collection,
            field_name="seq",
            field_schema=PayloadSchemaType.INTEGER,
        )

        logger.info("Created %s collection (%d dims, cosine)", self._collection, self._dimensions)

    def _next_seq_block(self, size: int) -> int:
        """Reserve ``size`` consecutive sequence numbers, strictly increasing.

        Microsecond based so values stay exact when range filters compare
        them as floats.
        """
        start = max(time.time_ns() // 1000, self._last_seq + 1)
        self._last_seq = start + size - 1
        return start

    def _validate_chunks(self, tenant_id: str, chunks: list[KBChunk]) -> None:
        for chunk in chunks:
            if chunk.tenant_id != tenant_id:
                raise ValueError(
                    f"Chunk {chunk.id} has tenant_id={chunk.tenant_id}, "
                    f"expected {tenant_id}"
                )
            if len(chunk.embedding) != self._dimensions:
                raise ValueError(
                    f"Chunk {chunk.id} has embedding dimension {len(chunk.embedding)}, "
                    f"expected {self._dimensions}"
                )

    async def load(self, tenant_id: str, chunks: list[KBChunk]) -> int:
        """Insert a batch of chunks for a tenant, all or nothing.

        Every chunk is validated before anything is written. If the write
        itself fails, the points this call attempted are removed again so
        no partial batch stays visible. Point ids are derived from the
        tenant and chunk id, so a load never overwrites another tenant's
        points even when chunk ids collide.

        Args:
            tenant_id: Owning tenant ID (must match every chunk.tenant_id).
            chunks: Pre-embedded chunks, in insertion order.

        Returns:
            Number of chunks written.

        Raises:
            ValueError: A chunk belongs to another tenant or has the wrong
                embedding dimension.
            VectorStoreError: The store rejected the write.
        """
        if not chunks:
            return 0

        self._validate_chunks(tenant_id, chunks)
        await self._write(tenant_id, chunks)
        logger.info("Loaded %d chunks for tenant %s", len(chunks), tenant_id)
        return len(chunks)

    async def replace(self, tenant_id: str, chunks: list[KBChunk]) -> int:
        """Swap a tenant's knowledge base for ``chunks``.

        The new chunks are written first and the previous ones deleted
        only after that write succeeded, so a failed load leaves the old
        knowledge base in place.

        Raises:
            ValueError: Empty batch, or a chunk fails validation.
            VectorStoreError: The write or the removal of old chunks failed.
        """
        if not chunks:
            raise ValueError("replace requires at least one chunk")

        self._validate_chunks(tenant_id, chunks)
        seq_start = await self._write(tenant_id, chunks)

        stale = Filter(
            must=[
                FieldCondition(key="tenant_id", match=MatchValue(value=tenant_id)),
                FieldCondition(key="seq", range=Range(lt=seq_start)),
            ]
        )
        try:
            await self._client.delete(
                collection_name=self._collection,
                points_selector=FilterSelector(filter=stale),
                wait=True,
            )
        except Exception as exc:
            logger.error("Removing replaced chunks failed for tenant %s: %s", tenant_id, exc)
            raise VectorStoreError(
                f"Loaded new knowledge base for tenant '{tenant_id}' but old chunks remain"
            ) from exc

        logger.info("Replaced knowledge base for tenant %s with %d chunks", tenant_id, len(chunks))
        return len(chunks)

    async def _write(self, tenant_id: str, chunks: list[KBChunk]) -> int:
        """Upsert validated chunks; returns the first sequence number used."""
        seq_start = self._next_seq_block(len(chunks))
        points: list[PointStruct] = []
        for offset, chunk in enumerate(chunks):
            payload: dict[str, Any] = {
                "tenant_id": tenant_id,
                "content": chunk.content,
                "chunk_id": chunk.id,
                "seq": seq_start + offset,
            }
            points.append(
                PointStruct(
                    id=point_id(tenant_id, chunk.id),
                    vector={DENSE_VECTOR: chunk.embedding},
                    payload=payload,
                )
            )

        try:
            await self._client.upsert(
                collection_name=self._collection,
                points=points,
                wait=True,
            )
        except Exception as exc:
            logger.error("Bulk load failed for tenant %s: %s", tenant_id, exc)
            await self._remove_points([p.id for p in points], tenant_id)
            raise VectorStoreError(f"Failed to load knowledge base for tenant '{tenant_id}'") from exc
        return seq_start

    async def _remove_points(self, point_ids: list, tenant_id: str) -> None:
        try:
            await self._client.delete(
                collection_name=self._collection,
                points_selector=PointIdsList(points=point_ids),
                wait=True,
            )
        except Exception:
            logger.exception(
                "Rollback of %d points failed for tenant %s", len(point_ids), tenant_id
            )

    async def retrieve_top_k(
        self,
        tenant_id: str,
        query_embedding: list[float],
        k: int | None = None,
    ) -> list[str]:
        """Return up to k chunk contents most similar to the query.

        Ordered by ascending cosine distance; equally similar chunks keep
        insertion order. Only the given tenant's chunks are considered.

        Args:
            tenant_id: Tenant to search within.
            query_embedding: Query vector of the store's dimension.
            k: Number of results. Defaults to config.default_top_k.

        Returns:
            Chunk contents, best match first. Empty when k <= 0 or the
            tenant has no chunks.

        Raises:
            RetrievalError: Wrong query dimension or store failure.
        """
        k = self._config.default_top_k if k is None else k
        if k <= 0:
            return []

        if len(query_embedding) != self._dimensions:
            raise RetrievalError(
                f"Query embedding dimension {len(query_embedding)}, expected {self._dimensions}"
            )

        try:
            points = await self._fetch_with_ties(tenant_id, query_embedding, k)
        except Exception as exc:
            logger.warning("Retrieval failed for tenant %s: %s", tenant_id, exc)
            raise RetrievalError(f"Retrieval failed for tenant '{tenant_id}'") from exc

        ranked = sorted(points, key=lambda p: (-_score(p), (p.payload or {}).get("seq", 0)))
        return [(p.payload or {}).get("content", "") for p in ranked[:k]]

    async def _fetch_with_ties(
        self,
        tenant_id: str,
        query_embedding: list[float],
        k: int,
    ) -> list[Any]:
        """Fetch the top k points plus every point tied with the k-th score.

        Qdrant picks arbitrarily among equal scores at the limit boundary,
        so the limit doubles until the last point returned scores strictly
        below the k-th one or the tenant has no more points.
        """
        limit = max(k * 2, k + 8)
        while True:
            response = await self._client.query_points(
                collection_name=self._collection,
                query=query_embedding,
                using=DENSE_VECTOR,
                query_filter=_tenant_filter(tenant_id),
                limit=limit,
                with_payload=True,
            )
            points = response.points
            if len(points) < limit or _score(points[-1]) < _score(points[k - 1]):
                return points
            limit *= 2

    async def delete(self, tenant_id: str) -> None:
        """Delete every chunk belonging to a tenant.

        Raises:
            VectorStoreError: The store rejected the delete.
        """
        try:
            await self._client.delete(
                collection_name=self._collection,
                points_selector=FilterSelector(filter=_tenant_filter(tenant_id)),
                wait=True,
            )
        except Exception as exc:
            logger.error("Knowledge base delete failed for tenant %s: %s", tenant_id, exc)
            raise VectorStoreError(f"Failed to delete knowledge base for tenant '{tenant_id}'") from exc
        logger.info("Deleted knowledge base for tenant %s", tenant_id)

    async def count(self, tenant_id: str) -> int:
        """Number of chunks stored for a tenant."""
        result = await self._client.count(
            collection_name=self._collection,
            count_filter=_tenant_filter(tenant_id),
            exact=True,
        )
        return result.count

    async def ping(self) -> bool:
        await self._client.get_collections()
        return True

    async def close(self) -> None:
        """Close the Qdrant client connection."""
        await self._client.close()
