"""Knowledge Base module for tenant-scoped vector storage and retrieval.

Provides Qdrant-backed vector storage with payload-based multi-tenant isolation,
OpenAI dense embeddings, and the Pydantic chunk model.
"""

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import Embedder, EmbeddingService
from src.knowledge.models import KBChunk
from src.knowledge.qdrant_client import QdrantKnowledgeStore

__all__ = [
    "Embedder",
    "EmbeddingService",
    "KBChunk",
    "KnowledgeBaseConfig",
    "QdrantKnowledgeStore",
]
