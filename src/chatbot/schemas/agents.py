"""Pydantic schemas for agent (tenant) admin endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from src.chatbot.queue.schemas import DeadLetter
from src.chatbot.services.telemetry import MetricRecord


class ChunkIn(BaseModel):
    """One pre-embedded knowledge chunk in a load request."""

    content: str = Field(..., min_length=1, description="Text returned as prompt context")
    embedding: list[float] = Field(..., min_length=1, description="Dense vector of the store dimension")


class KnowledgeBaseLoad(BaseModel):
    """Request schema for bulk-loading an agent's knowledge base."""

    chunks: list[ChunkIn] = Field(..., min_length=1)


class KnowledgeBaseLoaded(BaseModel):
    loaded: int


class KnowledgeBaseDeleted(BaseModel):
    deleted: bool = True


class AgentOffboarded(BaseModel):
    offboarded: bool = True
    knowledge_base_deleted: bool


class QueueStatus(BaseModel):
    length: int
    worker_active: bool


class MetricList(BaseModel):
    items: list[MetricRecord]


class DeadLetterList(BaseModel):
    items: list[DeadLetter]
