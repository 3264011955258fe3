"""Tests for knowledge base inactivity expiry."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from src.chatbot.core.errors import VectorStoreError
from src.chatbot.intake.validator import validate_payload
from src.chatbot.queue.schemas import Job
from src.chatbot.services.kb_expiry import KnowledgeBaseExpiry
from src.knowledge.models import KBChunk

E1 = [1.0, 0.0, 0.0, 0.0]


def _payload(agent_id: str = "biz_001") -> dict:
    return {
        "agent_id": agent_id,
        "user_id": "user_42",
        "text": "When do you open?",
        "timestamp": "2026-10-17T09:00:00Z",
    }


async def _load(store, tenant_id: str, content: str = "Open 9-5") -> None:
    await store.load(tenant_id, [KBChunk(tenant_id=tenant_id, content=content, embedding=E1)])


# ── Tracker ───────────────────────────────────────────────────────────────


class TestTracker:
    async def test_idle_tenant_expires(self, kb_expiry, store, clock):
        await _load(store, "biz_001")
        kb_expiry.touch("biz_001")

        clock.advance(59)
        assert await kb_expiry.sweep() == []
        assert await store.count("biz_001") == 1

        clock.advance(1)
        assert await kb_expiry.sweep() == ["biz_001"]
        assert await store.count("biz_001") == 0
        assert kb_expiry.tracked == []

    async def test_activity_restarts_timer(self, kb_expiry, store, clock):
        await _load(store, "biz_001")
        kb_expiry.touch("biz_001")
        clock.advance(45)
        kb_expiry.touch("biz_001")
        clock.advance(45)

        assert await kb_expiry.sweep() == []
        assert await store.count("biz_001") == 1

    async def test_only_idle_tenant_deleted(self, kb_expiry, store, clock):
        await _load(store, "biz_001", "alpha")
        await _load(store, "biz_002", "beta")
        kb_expiry.touch("biz_001")
        clock.advance(30)
        kb_expiry.touch("biz_002")
        clock.advance(30)

        assert await kb_expiry.sweep() == ["biz_001"]
        assert await store.retrieve_top_k("biz_002", E1, 3) == ["beta"]
        assert kb_expiry.tracked == ["biz_002"]

    async def test_delete_failure_retried_next_sweep(self, clock):
        store = AsyncMock()
        store.delete.side_effect = [VectorStoreError("timeout"), None]
        expiry = KnowledgeBaseExpiry(store, 60, clock=clock)
        expiry.touch("biz_001")
        clock.advance(60)

        assert await expiry.sweep() == []
        assert expiry.tracked == ["biz_001"]
        assert await expiry.sweep() == ["biz_001"]
        assert store.delete.await_count == 2

    async def test_disabled_when_ttl_zero(self, store, clock):
        expiry = KnowledgeBaseExpiry(store, 0, clock=clock)
        expiry.touch("biz_001")
        clock.advance(10_000)

        assert not expiry.enabled
        assert expiry.tracked == []
        assert await expiry.sweep() == []
        assert expiry.start(0.01) is None

    async def test_background_sweep(self):
        store = AsyncMock()
        expiry = KnowledgeBaseExpiry(store, 0.01)
        expiry.touch("biz_001")

        task = expiry.start(0.02)
        assert task is not None
        assert expiry.start(0.02) is task

        for _ in range(100):
            if store.delete.await_count:
                break
            await asyncio.sleep(0.01)
        await expiry.aclose()

        store.delete.assert_awaited_once_with("biz_001")
        assert task.cancelled()


# ── Pipeline Activity ─────────────────────────────────────────────────────


class TestPipelineActivity:
    async def test_kb_load_starts_timer(self, client, kb_expiry, store, clock):
        response = await client.post(
            "/api/v1/agents/biz_001/knowledge-base",
            json={"chunks": [{"content": "Open 9-5", "embedding": E1}]},
        )
        assert response.status_code == 201
        assert kb_expiry.tracked == ["biz_001"]

        clock.advance(60)
        assert await kb_expiry.sweep() == ["biz_001"]
        assert await store.count("biz_001") == 0

    async def test_intake_and_retrieval_keep_kb_alive(
        self, client, kb_expiry, store, clock, senders, wait_until
    ):
        await _load(store, "biz_001")
        kb_expiry.touch("biz_001")
        clock.advance(50)

        await client.post("/intake", json=_payload())
        await wait_until(lambda: len(senders["whatsapp"].sent) == 1)
        clock.advance(50)

        assert await kb_expiry.sweep() == []
        assert await store.count("biz_001") == 1

    async def test_retrieval_counts_as_activity(self, dispatcher, kb_expiry):
        await dispatcher.process_message(_job(_payload("biz_003")))
        assert kb_expiry.tracked == ["biz_003"]

    async def test_kb_delete_stops_tracking(self, client, kb_expiry):
        kb_expiry.touch("biz_001")
        response = await client.delete("/api/v1/agents/biz_001/knowledge-base")
        assert response.status_code == 200
        assert kb_expiry.tracked == []


def _job(payload: dict) -> Job:
    return Job(message=validate_payload(payload, default_platform="whatsapp"))
