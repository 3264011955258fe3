"""Tests for the per-tenant queues: schemas, Redis streams, DLQ, worker, registry.

Covers:
- Job stream serialization and DeadLetter views
- RedisTenantStream / RedisDeadLetterQueue command usage (mocked Redis)
- TenantWorker retry, dead-lettering, and reclaim of abandoned entries
- QueueRegistry FIFO order, tenant independence, single worker per
  tenant, offboarding drain, shutdown, and startup resume
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as aioredis

from src.chatbot.core.errors import QueueError
from src.chatbot.queue.backend import RedisQueueBackend
from src.chatbot.queue.dlq import RedisDeadLetterQueue, dlq_key
from src.chatbot.queue.memory import InMemoryQueueBackend
from src.chatbot.queue.registry import QueueRegistry
from src.chatbot.queue.schemas import DeadLetter, Job, NormalizedMessage
from src.chatbot.queue.streams import CONSUMER_GROUP, RedisTenantStream, stream_key
from src.chatbot.queue.worker import TenantWorker


def _message(tenant_id: str = "biz_001", text: str = "hello", **kwargs) -> NormalizedMessage:
    return NormalizedMessage(
        tenant_id=tenant_id,
        user_id=kwargs.pop("user_id", "user_1"),
        text=text,
        timestamp="2026-10-17T09:00:00Z",
        **kwargs,
    )


async def _aiter(items):
    for item in items:
        yield item


class _SlowOpenBackend(InMemoryQueueBackend):
    """In-memory backend that records stream opens and yields in ensure_group."""

    def __init__(self) -> None:
        super().__init__()
        self.opened: list[str] = []
        self.groups_created = 0

    def open_stream(self, tenant_id: str):
        self.opened.append(tenant_id)
        stream = super().open_stream(tenant_id)

        async def ensure_group() -> None:
            await asyncio.sleep(0.01)
            self.groups_created += 1

        stream.ensure_group = ensure_group
        return stream


# ── Schema Tests ──────────────────────────────────────────────────────────


class TestJobSchema:
    def test_stream_dict_roundtrip(self):
        job = Job(message=_message(media=("https://cdn.example.com/a.png",), platform="website"))
        restored = Job.from_stream_dict(job.to_stream_dict())
        assert restored == job

    def test_stream_dict_is_flat_strings(self):
        data = Job(message=_message()).to_stream_dict()
        assert all(isinstance(v, str) for v in data.values())
        assert data["media"] == "[]"

    def test_missing_field_raises_key_error(self):
        data = Job(message=_message()).to_stream_dict()
        del data["user_id"]
        with pytest.raises(KeyError):
            Job.from_stream_dict(data)

    def test_job_ids_are_unique(self):
        assert Job(message=_message()).id != Job(message=_message()).id


class TestDeadLetter:
    def test_from_stream_entry_splits_metadata(self):
        job = Job(message=_message(text="poison"))
        raw = {
            **job.to_stream_dict(),
            "_dlq_original_id": "1-0",
            "_dlq_error": "boom",
            "_dlq_attempts": "3",
            "_dlq_timestamp": "2026-10-17T09:00:05+00:00",
        }
        dead = DeadLetter.from_stream_entry("5-0", raw)
        assert dead.entry_id == "5-0"
        assert dead.original_id == "1-0"
        assert dead.job_id == job.id
        assert dead.error == "boom"
        assert dead.attempts == 3
        assert dead.payload["text"] == "poison"
        assert not any(k.startswith("_dlq_") for k in dead.payload)


# ── Redis Stream Tests ────────────────────────────────────────────────────


class TestKeys:
    def test_stream_key(self):
        assert stream_key("biz_001") == "t:biz_001:queue:messages"

    def test_dlq_key(self):
        assert dlq_key("biz_001") == "t:biz_001:queue:messages:dlq"


class TestRedisTenantStream:
    @pytest.fixture
    def redis(self) -> AsyncMock:
        return AsyncMock()

    async def test_ensure_group_creates_stream(self, redis):
        stream = RedisTenantStream(redis, "biz_001")
        await stream.ensure_group()
        redis.xgroup_create.assert_awaited_once_with(
            "t:biz_001:queue:messages", CONSUMER_GROUP, id="0", mkstream=True,
        )

    async def test_ensure_group_ignores_busygroup(self, redis):
        redis.xgroup_create.side_effect = aioredis.ResponseError(
            "BUSYGROUP Consumer Group name already exists"
        )
        await RedisTenantStream(redis, "biz_001").ensure_group()

    async def test_ensure_group_reraises_other_errors(self, redis):
        redis.xgroup_create.side_effect = aioredis.ResponseError("WRONGTYPE")
        with pytest.raises(aioredis.ResponseError):
            await RedisTenantStream(redis, "biz_001").ensure_group()

    async def test_append_uses_capped_xadd(self, redis):
        redis.xadd.return_value = "1700000000000-0"
        job = Job(message=_message())
        entry_id = await RedisTenantStream(redis, "biz_001", maxlen=500).append(job)

        assert entry_id == "1700000000000-0"
        redis.xadd.assert_awaited_once_with(
            "t:biz_001:queue:messages",
            job.to_stream_dict(),
            maxlen=500,
            approximate=True,
        )

    async def test_read_skips_deleted_entries(self, redis):
        redis.xreadgroup.return_value = [
            ["t:biz_001:queue:messages", [("1-0", {"job_id": "a"}), ("1-1", {})]],
        ]
        entries = await RedisTenantStream(redis, "biz_001").read("c1", block_ms=100)
        assert entries == [("1-0", {"job_id": "a"})]

    async def test_read_timeout_returns_empty(self, redis):
        redis.xreadgroup.return_value = None
        assert await RedisTenantStream(redis, "biz_001").read("c1", block_ms=100) == []

    async def test_reclaim_reports_delivery_count(self, redis):
        redis.xautoclaim.return_value = ["0-0", [("1-0", {"job_id": "a"})], []]
        redis.xpending_range.return_value = [
            {"message_id": "1-0", "consumer": "c1", "time_since_delivered": 10, "times_delivered": 2},
        ]
        reclaimed = await RedisTenantStream(redis, "biz_001").reclaim("c1")
        assert reclaimed == [("1-0", {"job_id": "a"}, 2)]

    async def test_ack_deletes_entry(self, redis):
        await RedisTenantStream(redis, "biz_001").ack("1-0")
        redis.xack.assert_awaited_once_with("t:biz_001:queue:messages", CONSUMER_GROUP, "1-0")
        redis.xdel.assert_awaited_once_with("t:biz_001:queue:messages", "1-0")


class TestRedisDeadLetterQueue:
    async def test_send_adds_failure_metadata(self):
        redis = AsyncMock()
        redis.xadd.return_value = "9-0"
        dlq = RedisDeadLetterQueue(redis, "biz_001")

        dlq_entry_id = await dlq.send("1-0", {"job_id": "a"}, "boom", 3)

        assert dlq_entry_id == "9-0"
        key, fields = redis.xadd.call_args.args
        assert key == "t:biz_001:queue:messages:dlq"
        assert fields["job_id"] == "a"
        assert fields["_dlq_original_id"] == "1-0"
        assert fields["_dlq_error"] == "boom"
        assert fields["_dlq_attempts"] == "3"


class TestRedisQueueBackend:
    async def test_tenants_with_backlog(self):
        redis = MagicMock()
        redis.scan_iter = MagicMock(
            return_value=_aiter(["t:biz_b:queue:messages", "t:biz_a:queue:messages"])
        )
        redis.xlen = AsyncMock(side_effect=[3, 0])

        tenants = await RedisQueueBackend(redis).tenants_with_backlog()

        assert tenants == ["biz_b"]


# ── Worker Tests ──────────────────────────────────────────────────────────


class TestTenantWorker:
    async def test_undecodable_entry_dead_lettered(self):
        stream = AsyncMock()
        stream.reclaim.return_value = [("1-0", {"bogus": "1"}, 1)]
        stream.read.return_value = []
        dlq = AsyncMock()
        processor = AsyncMock()

        worker = TenantWorker("biz_001", stream, dlq, processor, retry_delays=(0,))
        worker.drain()
        await worker.run()

        processor.assert_not_awaited()
        entry_id, raw, error, attempts = dlq.send.call_args.args
        assert (entry_id, raw, attempts) == ("1-0", {"bogus": "1"}, 0)
        assert error.startswith("undecodable payload")
        stream.ack.assert_awaited_once_with("1-0")

    async def test_reclaimed_entry_keeps_attempt_count(self):
        """An entry delivered twice before a crash gets one final attempt."""
        job = Job(message=_message())
        stream = AsyncMock()
        stream.reclaim.return_value = [("1-0", job.to_stream_dict(), 3)]
        stream.read.return_value = []
        dlq = AsyncMock()
        processor = AsyncMock(side_effect=RuntimeError("still broken"))

        worker = TenantWorker("biz_001", stream, dlq, processor, max_attempts=3, retry_delays=(0,))
        worker.drain()
        await worker.run()

        processor.assert_awaited_once()
        assert processor.call_args.args[0].attempt_count == 3
        assert dlq.send.call_args.args[2:] == ("still broken", 3)
        stream.ack.assert_awaited_once_with("1-0")


# ── Registry Tests ────────────────────────────────────────────────────────


class TestQueueRegistry:
    async def test_enqueue_returns_job(self, registry):
        job = await registry.enqueue("biz_001", _message())
        assert job.tenant_id == "biz_001"
        assert job.attempt_count == 0
        assert await registry.queue_length("biz_001") == 1

    async def test_enqueue_rejects_foreign_message(self, registry):
        with pytest.raises(ValueError, match="does not match"):
            await registry.enqueue("biz_002", _message("biz_001"))

    async def test_enqueue_transport_failure(self):
        stream = AsyncMock()
        stream.append.side_effect = ConnectionError("redis down")
        backend = MagicMock()
        backend.open_stream.return_value = stream
        reg = QueueRegistry(backend)

        with pytest.raises(QueueError):
            await reg.enqueue("biz_001", _message())

    async def test_fifo_order(self, registry, wait_until):
        seen: list[str] = []

        async def processor(job: Job) -> None:
            seen.append(job.message.text)

        for i in range(5):
            await registry.enqueue("biz_001", _message(text=f"m{i}"))
        await registry.ensure_worker("biz_001", processor)

        await wait_until(lambda: len(seen) == 5)
        assert seen == ["m0", "m1", "m2", "m3", "m4"]
        assert await registry.queue_length("biz_001") == 0

    async def test_one_worker_per_tenant(self, registry):
        processor = AsyncMock()
        workers = await asyncio.gather(
            *(registry.ensure_worker("biz_001", processor) for _ in range(10))
        )
        assert all(w is workers[0] for w in workers)
        assert registry.worker_active("biz_001")

    async def test_concurrent_first_enqueues_create_one_queue(self):
        backend = _SlowOpenBackend()
        registry = QueueRegistry(backend, retry_delays=(0,), block_ms=50)
        gate = asyncio.Event()

        async def processor(job: Job) -> None:
            await gate.wait()

        try:
            jobs = await asyncio.gather(
                *(registry.enqueue("biz_new", _message("biz_new", f"m{i}")) for i in range(10))
            )
            assert backend.opened == ["biz_new"]
            assert backend.groups_created == 1
            assert len({job.id for job in jobs}) == 10

            workers = await asyncio.gather(
                *(registry.ensure_worker("biz_new", processor) for _ in range(10))
            )
            assert all(w is workers[0] for w in workers)
            assert backend.opened == ["biz_new"]
            assert await registry.queue_length("biz_new") == 10
        finally:
            gate.set()
            await registry.aclose()

    async def test_stalled_tenant_does_not_block_others(self, registry, wait_until):
        gate = asyncio.Event()
        done: list[str] = []

        async def processor(job: Job) -> None:
            if job.tenant_id == "slow":
                await gate.wait()
            done.append(f"{job.tenant_id}:{job.message.text}")

        await registry.enqueue("slow", _message("slow", "s1"))
        for i in range(3):
            await registry.enqueue("fast", _message("fast", f"f{i}"))
        await registry.ensure_worker("slow", processor)
        await registry.ensure_worker("fast", processor)

        await wait_until(lambda: len(done) == 3)
        assert done == ["fast:f0", "fast:f1", "fast:f2"]

        gate.set()
        await wait_until(lambda: "slow:s1" in done)

    async def test_retry_then_success(self, registry, wait_until):
        attempts: list[int] = []

        async def processor(job: Job) -> None:
            attempts.append(job.attempt_count)
            if len(attempts) == 1:
                raise RuntimeError("transient")

        await registry.enqueue("biz_001", _message())
        await registry.ensure_worker("biz_001", processor)

        await wait_until(lambda: len(attempts) == 2)
        assert attempts == [1, 2]
        assert await registry.dead_letters("biz_001") == []

    async def test_exhausted_job_dead_lettered_and_queue_moves_on(self, registry, wait_until):
        calls: list[str] = []

        async def processor(job: Job) -> None:
            calls.append(job.message.text)
            if job.message.text == "poison":
                raise ValueError("cannot process")

        poison = await registry.enqueue("biz_001", _message(text="poison"))
        await registry.enqueue("biz_001", _message(text="ok"))
        await registry.ensure_worker("biz_001", processor)

        await wait_until(lambda: "ok" in calls)
        assert calls == ["poison", "poison", "poison", "ok"]

        dead = await registry.dead_letters("biz_001")
        assert len(dead) == 1
        assert dead[0].job_id == poison.id
        assert dead[0].attempts == 3
        assert dead[0].error == "cannot process"
        assert dead[0].payload["text"] == "poison"
        assert await registry.queue_length("biz_001") == 0

    async def test_offboard_drains_backlog(self, registry):
        processed: list[str] = []

        async def processor(job: Job) -> None:
            await asyncio.sleep(0.01)
            processed.append(job.message.text)

        for i in range(3):
            await registry.enqueue("biz_001", _message(text=f"m{i}"))
        await registry.ensure_worker("biz_001", processor)

        await registry.offboard("biz_001")

        assert processed == ["m0", "m1", "m2"]
        assert not registry.worker_active("biz_001")

    async def test_offboard_without_worker_drains_with_processor(self, registry):
        processed: list[str] = []

        async def processor(job: Job) -> None:
            processed.append(job.message.text)

        await registry.enqueue("biz_001", _message(text="left over"))
        await registry.offboard("biz_001", processor=processor)

        assert processed == ["left over"]
        assert not registry.worker_active("biz_001")

    async def test_aclose_keeps_queued_jobs(self, registry):
        started = asyncio.Event()
        gate = asyncio.Event()
        processed: list[str] = []

        async def processor(job: Job) -> None:
            started.set()
            await gate.wait()
            processed.append(job.message.text)

        await registry.enqueue("biz_001", _message(text="first"))
        await registry.enqueue("biz_001", _message(text="second"))
        await registry.ensure_worker("biz_001", processor)
        await started.wait()

        closing = asyncio.create_task(registry.aclose())
        await asyncio.sleep(0.01)
        gate.set()
        await closing

        assert processed == ["first"]
        assert not registry.worker_active("biz_001")
        assert await registry.queue_length("biz_001") == 1

    async def test_aclose_cancels_idle_workers(self, registry):
        await registry.ensure_worker("biz_001", AsyncMock())
        await asyncio.sleep(0)
        await registry.aclose()
        assert not registry.worker_active("biz_001")

    async def test_resume_starts_workers_with_backlog(self, registry, wait_until):
        processed: list[str] = []

        async def processor(job: Job) -> None:
            processed.append(job.tenant_id)

        await registry.enqueue("biz_b", _message("biz_b"))
        await registry.enqueue("biz_a", _message("biz_a"))

        tenants = await registry.resume(processor)

        assert tenants == ["biz_a", "biz_b"]
        await wait_until(lambda: len(processed) == 2)
        assert sorted(processed) == ["biz_a", "biz_b"]

    async def test_crashed_worker_is_replaced(self, wait_until):
        stream = AsyncMock()
        stream.reclaim.side_effect = ConnectionError("redis gone")
        backend = MagicMock()
        backend.open_stream.return_value = stream
        backend.open_dlq.return_value = AsyncMock()
        reg = QueueRegistry(backend, block_ms=10)

        first = await reg.ensure_worker("biz_001", AsyncMock())
        await wait_until(lambda: not reg.worker_active("biz_001"))
        second = await reg.ensure_worker("biz_001", AsyncMock())

        assert second is not first
        await reg.aclose()
