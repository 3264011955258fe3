"""Agent (tenant) admin endpoints.

Knowledge base loading and deletion, offboarding, and read access to an
agent's telemetry, queue state, and dead letters.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.chatbot.api.deps import bind_agent_tenant, get_pipeline
from src.chatbot.core.errors import QueueError, VectorStoreError
from src.chatbot.pipeline import Pipeline
from src.chatbot.schemas.agents import (
    AgentOffboarded,
    DeadLetterList,
    KnowledgeBaseDeleted,
    KnowledgeBaseLoad,
    KnowledgeBaseLoaded,
    MetricList,
    QueueStatus,
)
from src.chatbot.services.telemetry import MetricType
from src.knowledge.models import KBChunk

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/agents",
    tags=["agents"],
    dependencies=[Depends(bind_agent_tenant)],
)


@router.post(
    "/{agent_id}/knowledge-base",
    response_model=KnowledgeBaseLoaded,
    status_code=status.HTTP_201_CREATED,
)
async def load_knowledge_base(
    agent_id: str,
    body: KnowledgeBaseLoad,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Bulk-load pre-embedded chunks. All chunks are stored or none are."""
    chunks = [
        KBChunk(tenant_id=agent_id, content=c.content, embedding=c.embedding)
        for c in body.chunks
    ]
    try:
        loaded = await pipeline.store.load(agent_id, chunks)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except VectorStoreError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    pipeline.touch(agent_id)
    return KnowledgeBaseLoaded(loaded=loaded)


@router.delete("/{agent_id}/knowledge-base", response_model=KnowledgeBaseDeleted)
async def delete_knowledge_base(agent_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Delete every knowledge chunk of an agent."""
    try:
        await pipeline.store.delete(agent_id)
    except VectorStoreError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    pipeline.forget(agent_id)
    return KnowledgeBaseDeleted()


@router.delete("/{agent_id}", response_model=AgentOffboarded)
async def offboard_agent(agent_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Offboard an agent: drain its queue, then delete its knowledge base.

    Jobs already queued still get replies before the knowledge base goes.
    """
    try:
        await pipeline.registry.offboard(agent_id, processor=pipeline.dispatcher.handle)
    except QueueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    try:
        await pipeline.store.delete(agent_id)
    except VectorStoreError:
        logger.error("offboard_kb_delete_failed", tenant_id=agent_id)
        return AgentOffboarded(knowledge_base_deleted=False)
    pipeline.forget(agent_id)
    return AgentOffboarded(knowledge_base_deleted=True)


@router.get("/{agent_id}/metrics", response_model=MetricList)
async def get_agent_metrics(
    agent_id: str,
    metric_type: MetricType | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=1000),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Newest-first telemetry for an agent, optionally filtered by type."""
    items = await pipeline.telemetry.query(agent_id, metric_type=metric_type, limit=limit)
    return MetricList(items=items)


@router.get("/{agent_id}/queue", response_model=QueueStatus)
async def get_queue_status(agent_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Backlog size and worker state for an agent's queue."""
    try:
        length = await pipeline.registry.queue_length(agent_id)
    except QueueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return QueueStatus(length=length, worker_active=pipeline.registry.worker_active(agent_id))


@router.get("/{agent_id}/dead-letters", response_model=DeadLetterList)
async def get_dead_letters(
    agent_id: str,
    count: int = Query(default=50, ge=1, le=500),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Jobs that exhausted their delivery attempts, oldest first."""
    try:
        items = await pipeline.registry.dead_letters(agent_id, count=count)
    except QueueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return DeadLetterList(items=items)
