"""Assembly of the message pipeline components.

build_pipeline() wires settings into the queue backend, vector store,
embedder, LLM client, reply router, telemetry recorder, knowledge base
expiry, dispatcher, and queue registry. The FastAPI lifespan stores the result on app.state;
tests pass a pre-built Pipeline to create_app() instead.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from src.chatbot.config import Settings
from src.chatbot.core.database import get_engine, init_db
from src.chatbot.dispatch.dispatcher import Dispatcher
from src.chatbot.queue.backend import QueueBackend, create_queue_backend
from src.chatbot.queue.registry import QueueRegistry
from src.chatbot.services.llm import LLMClient
from src.chatbot.services.kb_expiry import KnowledgeBaseExpiry
from src.chatbot.services.reply import ReplyRouter
from src.chatbot.services.telemetry import TelemetryRecorder
from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.qdrant_client import QdrantKnowledgeStore

logger = structlog.get_logger(__name__)


@dataclass
class Pipeline:
    """Live components shared by the HTTP layer and the tenant workers."""

    backend: QueueBackend
    registry: QueueRegistry
    dispatcher: Dispatcher
    store: QdrantKnowledgeStore
    telemetry: TelemetryRecorder
    llm: LLMClient | None = None
    router: ReplyRouter | None = None
    engine: AsyncEngine | None = None
    kb_expiry: KnowledgeBaseExpiry | None = None

    def touch(self, tenant_id: str) -> None:
        """Restart the tenant's knowledge base inactivity timer."""
        if self.kb_expiry is not None:
            self.kb_expiry.touch(tenant_id)

    def forget(self, tenant_id: str) -> None:
        if self.kb_expiry is not None:
            self.kb_expiry.forget(tenant_id)


def build_registry(backend: QueueBackend, settings: Settings) -> QueueRegistry:
    return QueueRegistry(
        backend,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        retry_delays=settings.QUEUE_RETRY_DELAYS,
        block_ms=settings.QUEUE_BLOCK_MS,
        consumer_name=f"dispatcher-{socket.gethostname()}",
    )


async def build_pipeline(settings: Settings) -> Pipeline:
    """Create and initialize every pipeline component from settings."""
    kb_config = KnowledgeBaseConfig()
    store = QdrantKnowledgeStore(kb_config)
    await store.initialize()

    engine = get_engine()
    try:
        await init_db(engine)
    except Exception:
        # Telemetry writes log and drop failures until the DB is reachable.
        logger.warning("telemetry_db_init_failed", exc_info=True)
    telemetry = TelemetryRecorder.from_engine(engine)

    llm = LLMClient.from_settings(settings)
    router = ReplyRouter.from_settings(settings)
    kb_expiry = KnowledgeBaseExpiry(store, settings.KB_INACTIVITY_TTL)
    dispatcher = Dispatcher(
        EmbeddingService(kb_config),
        store,
        llm,
        router,
        telemetry,
        top_k=settings.RAG_TOP_K,
        kb_expiry=kb_expiry,
    )

    backend = create_queue_backend(settings)
    registry = build_registry(backend, settings)

    logger.info(
        "pipeline_initialized",
        queue_backend=settings.QUEUE_BACKEND.value,
        llm_model=settings.LLM_MODEL,
        platforms=router.platforms,
    )
    return Pipeline(
        backend=backend,
        registry=registry,
        dispatcher=dispatcher,
        store=store,
        telemetry=telemetry,
        llm=llm,
        router=router,
        engine=engine,
        kb_expiry=kb_expiry,
    )


async def close_pipeline(pipeline: Pipeline) -> None:
    """Stop workers, flush telemetry, and release owned clients."""
    if pipeline.kb_expiry is not None:
        await pipeline.kb_expiry.aclose()
    await pipeline.registry.aclose()
    await pipeline.telemetry.flush()
    if pipeline.router is not None:
        await pipeline.router.aclose()
    if pipeline.llm is not None:
        await pipeline.llm.aclose()
    await pipeline.store.close()
