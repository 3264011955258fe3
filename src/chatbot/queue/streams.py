"""Tenant message streams backed by Redis Streams.

Each tenant gets its own stream and consumer group, so one tenant's
backlog never blocks another's reads. Acknowledged entries are deleted
from the stream, which keeps XLEN equal to the tenant's backlog
(queued plus in-flight).

Stream key pattern: t:{tenant_id}:queue:messages
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from src.chatbot.queue.schemas import Job

logger = structlog.get_logger(__name__)

STREAM_NAME = "messages"
CONSUMER_GROUP = "dispatchers"
RECLAIM_BATCH = 100


def stream_key(tenant_id: str) -> str:
    """Build the tenant-scoped message stream key."""
    return f"t:{tenant_id}:queue:{STREAM_NAME}"


class RedisTenantStream:
    """One tenant's message stream with a single consumer group.

    Args:
        redis: Raw async Redis client (decode_responses=True).
        tenant_id: Tenant identifier for key scoping.
        maxlen: Approximate stream length cap applied on XADD.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        tenant_id: str,
        *,
        maxlen: int = 10000,
        group: str = CONSUMER_GROUP,
    ) -> None:
        self._redis = redis
        self.tenant_id = tenant_id
        self._maxlen = maxlen
        self._group = group

    @property
    def key(self) -> str:
        return stream_key(self.tenant_id)

    async def ensure_group(self) -> None:
        """Create the consumer group and stream if missing (idempotent)."""
        try:
            await self._redis.xgroup_create(self.key, self._group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def append(self, job: Job) -> str:
        """Append a job to the tail of the stream.

        Returns:
            Redis entry ID assigned by XADD.
        """
        entry_id = await self._redis.xadd(
            self.key,
            job.to_stream_dict(),
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug("job_appended", stream=self.key, job_id=job.id, entry_id=entry_id)
        return entry_id

    async def read(
        self,
        consumer: str,
        block_ms: int | None,
    ) -> list[tuple[str, dict[str, str]]]:
        """Read the next undelivered entry for this consumer.

        Args:
            consumer: Consumer name within the group.
            block_ms: Milliseconds to block for a new entry; None returns
                immediately.

        Returns:
            Zero or one ``(entry_id, data)`` pairs.
        """
        response = await self._redis.xreadgroup(
            groupname=self._group,
            consumername=consumer,
            streams={self.key: ">"},
            count=1,
            block=block_ms,
        )
        entries: list[tuple[str, dict[str, str]]] = []
        for _stream_key, messages in response or []:
            entries.extend((entry_id, data) for entry_id, data in messages if data)
        return entries

    async def reclaim(self, consumer: str) -> list[tuple[str, dict[str, str], int]]:
        """Take over entries left pending by a previous consumer.

        Uses XAUTOCLAIM with no idle threshold: each tenant has exactly
        one worker, so anything pending at worker start is abandoned.

        Returns:
            ``(entry_id, data, times_delivered)`` in stream order.
        """
        reclaimed: list[tuple[str, dict[str, str], int]] = []
        start_id = "0-0"
        while True:
            result = await self._redis.xautoclaim(
                self.key,
                self._group,
                consumer,
                min_idle_time=0,
                start_id=start_id,
                count=RECLAIM_BATCH,
            )
            next_id, messages = result[0], result[1]
            for entry_id, data in messages:
                if not data:
                    continue
                reclaimed.append((entry_id, data, await self.delivery_count(entry_id)))
            if not messages or next_id == "0-0":
                break
            start_id = next_id

        if reclaimed:
            logger.info("pending_entries_reclaimed", stream=self.key, count=len(reclaimed))
        return reclaimed

    async def delivery_count(self, entry_id: str) -> int:
        """Number of times the entry has been delivered to a consumer."""
        pending = await self._redis.xpending_range(
            self.key, self._group, min=entry_id, max=entry_id, count=1,
        )
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    async def ack(self, entry_id: str) -> None:
        """Acknowledge and remove a terminal entry."""
        await self._redis.xack(self.key, self._group, entry_id)
        await self._redis.xdel(self.key, entry_id)

    async def length(self) -> int:
        return await self._redis.xlen(self.key)
