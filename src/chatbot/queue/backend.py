"""Queue backend contract and factory.

A backend hands out one message stream and one dead letter queue per
tenant. The worker and registry only depend on the protocols below, so
Redis and the in-process backend are interchangeable.
"""

from __future__ import annotations

from typing import Protocol

import redis.asyncio as aioredis

from src.chatbot.config import QueueBackend as QueueBackendKind
from src.chatbot.config import Settings
from src.chatbot.queue.dlq import RedisDeadLetterQueue
from src.chatbot.queue.schemas import Job
from src.chatbot.queue.streams import STREAM_NAME, RedisTenantStream, stream_key


class TenantStream(Protocol):
    tenant_id: str

    async def ensure_group(self) -> None: ...

    async def append(self, job: Job) -> str: ...

    async def read(
        self, consumer: str, block_ms: int | None,
    ) -> list[tuple[str, dict[str, str]]]: ...

    async def reclaim(self, consumer: str) -> list[tuple[str, dict[str, str], int]]: ...

    async def delivery_count(self, entry_id: str) -> int: ...

    async def ack(self, entry_id: str) -> None: ...

    async def length(self) -> int: ...


class DeadLetterStore(Protocol):
    tenant_id: str

    async def send(
        self, entry_id: str, data: dict[str, str], error: str, attempts: int,
    ) -> str: ...

    async def list_entries(self, count: int = 50) -> list[tuple[str, dict[str, str]]]: ...


class QueueBackend(Protocol):
    def open_stream(self, tenant_id: str) -> TenantStream: ...

    def open_dlq(self, tenant_id: str) -> DeadLetterStore: ...

    async def tenants_with_backlog(self) -> list[str]: ...

    async def ping(self) -> bool: ...


class RedisQueueBackend:
    """Queue backend on Redis Streams, one stream per tenant."""

    def __init__(self, redis: aioredis.Redis, *, maxlen: int = 10000) -> None:
        self._redis = redis
        self._maxlen = maxlen

    def open_stream(self, tenant_id: str) -> RedisTenantStream:
        return RedisTenantStream(self._redis, tenant_id, maxlen=self._maxlen)

    def open_dlq(self, tenant_id: str) -> RedisDeadLetterQueue:
        return RedisDeadLetterQueue(self._redis, tenant_id, maxlen=self._maxlen)

    async def tenants_with_backlog(self) -> list[str]:
        """Tenants whose message stream still holds entries."""
        tenants: list[str] = []
        async for key in self._redis.scan_iter(match=stream_key("*"), _type="stream"):
            tenant_id = key[len("t:"):-len(f":queue:{STREAM_NAME}")]
            if await self._redis.xlen(key):
                tenants.append(tenant_id)
        return sorted(tenants)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())


def create_queue_backend(settings: Settings) -> QueueBackend:
    """Build the backend selected by QUEUE_BACKEND."""
    if settings.QUEUE_BACKEND == QueueBackendKind.memory:
        from src.chatbot.queue.memory import InMemoryQueueBackend

        return InMemoryQueueBackend()

    from src.chatbot.core.redis import get_redis_pool

    return RedisQueueBackend(get_redis_pool(), maxlen=settings.QUEUE_MAXLEN)
