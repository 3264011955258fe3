"""Test fixtures for the message pipeline.

Provides:
- In-memory queue backend and registry with fast retry settings
- SQLite (aiosqlite) telemetry engine and recorder
- Qdrant in-memory knowledge store with 4-dimensional vectors
- Recording reply senders and a scripted LLM
- Knowledge base expiry tracker on a manually advanced clock
- FastAPI app and async HTTP client wired to the in-memory pipeline
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from src.chatbot.core.database import init_db
from src.chatbot.dispatch.dispatcher import Dispatcher
from src.chatbot.main import create_app
from src.chatbot.pipeline import Pipeline
from src.chatbot.queue.memory import InMemoryQueueBackend
from src.chatbot.queue.registry import QueueRegistry
from src.chatbot.services.kb_expiry import KnowledgeBaseExpiry
from src.chatbot.services.llm import LLMClient
from src.chatbot.services.reply import ReplyPayload, ReplyRouter
from src.chatbot.services.telemetry import TelemetryRecorder
from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.qdrant_client import QdrantKnowledgeStore

DIMS = 4

LLM_REPLY = json.dumps(
    {"language": "English", "intent": "business_hours", "response": "We are open 9 to 5."}
)


# ── Helpers ─────────────────────────────────────────────────────────────────


class RecordingSender:
    """Reply sender that keeps every reply in memory."""

    def __init__(self, platform: str) -> None:
        self.platform = platform
        self.sent: list[ReplyPayload] = []

    async def send(self, reply: ReplyPayload) -> None:
        self.sent.append(reply)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbedder:
    """Deterministic embedder: every text maps to the first basis vector."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return [1.0, 0.0, 0.0, 0.0]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds (fails the test after a timeout)."""
    return _wait_until


@pytest.fixture
def backend() -> InMemoryQueueBackend:
    return InMemoryQueueBackend()


@pytest_asyncio.fixture
async def registry(backend) -> AsyncGenerator[QueueRegistry, None]:
    """Registry with immediate retries and short read blocks."""
    reg = QueueRegistry(backend, max_attempts=3, retry_delays=(0,), block_ms=50)
    yield reg
    await reg.aclose()


@pytest_asyncio.fixture
async def engine():
    """Single-connection in-memory SQLite engine with telemetry tables."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def telemetry(engine) -> AsyncGenerator[TelemetryRecorder, None]:
    recorder = TelemetryRecorder.from_engine(engine)
    yield recorder
    await recorder.flush()


@pytest.fixture
def kb_config() -> KnowledgeBaseConfig:
    return KnowledgeBaseConfig(
        qdrant_path=":memory:",
        qdrant_url=None,
        openai_api_key="test-key-not-used",
        embedding_dimensions=DIMS,
    )


@pytest_asyncio.fixture
async def store(kb_config) -> AsyncGenerator[QdrantKnowledgeStore, None]:
    kb_store = QdrantKnowledgeStore(kb_config)
    await kb_store.initialize()
    yield kb_store
    await kb_store.close()


@pytest.fixture
def senders() -> dict[str, RecordingSender]:
    return {name: RecordingSender(name) for name in ("whatsapp", "instagram", "website")}


@pytest.fixture
def reply_router(senders) -> ReplyRouter:
    return ReplyRouter(senders)


@pytest.fixture
def llm() -> MagicMock:
    """LLM client whose generate() returns a well-formed JSON reply."""
    client = MagicMock(spec=LLMClient)
    client.generate = AsyncMock(return_value=LLM_REPLY)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kb_expiry(store, clock) -> KnowledgeBaseExpiry:
    """Expiry tracker with a 60 second TTL on a manual clock."""
    return KnowledgeBaseExpiry(store, 60, clock=clock)


@pytest.fixture
def dispatcher(embedder, store, llm, reply_router, telemetry, kb_expiry) -> Dispatcher:
    return Dispatcher(embedder, store, llm, reply_router, telemetry, top_k=3, kb_expiry=kb_expiry)


@pytest.fixture
def pipeline(
    backend, registry, dispatcher, store, telemetry, llm, reply_router, engine, kb_expiry
) -> Pipeline:
    return Pipeline(
        backend=backend,
        registry=registry,
        dispatcher=dispatcher,
        store=store,
        telemetry=telemetry,
        llm=llm,
        router=reply_router,
        engine=engine,
        kb_expiry=kb_expiry,
    )


@pytest_asyncio.fixture
async def client(pipeline) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the app running on the in-memory pipeline."""
    app = create_app(pipeline=pipeline)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
