"""Pydantic models for the Knowledge Base domain.

A knowledge chunk is the atomic unit of a tenant's knowledge base: a piece
of text plus its embedding. These models are the contract between the
loading path (admin API, CLI) and the vector store.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, Field


class KBChunk(BaseModel):
    """A single unit of knowledge stored in the vector database.

    Attributes:
        id: Unique identifier (UUID4). The Qdrant point id is derived from
            it together with tenant_id.
        tenant_id: Owning tenant. The chunk is only visible to retrieval
            scoped to this tenant.
        content: Text handed to the prompt when the chunk is retrieved.
        embedding: Dense vector of the store's configured dimension.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    content: str = Field(min_length=1)
    embedding: list[float]
