"""Dead letter queue for jobs that exhausted their delivery attempts.

Stores the original job fields plus failure metadata so an operator can
review what failed and why.

DLQ key pattern: t:{tenant_id}:queue:messages:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog

from src.chatbot.queue.schemas import DLQ_FIELD_PREFIX
from src.chatbot.queue.streams import stream_key

logger = structlog.get_logger(__name__)


def dlq_key(tenant_id: str) -> str:
    """Build the tenant-scoped DLQ stream key."""
    return f"{stream_key(tenant_id)}:dlq"


def build_dlq_entry(
    entry_id: str,
    data: dict[str, str],
    error: str,
    attempts: int,
) -> dict[str, str]:
    """Merge the original entry with ``_dlq_*`` failure metadata."""
    return {
        **data,
        f"{DLQ_FIELD_PREFIX}original_id": entry_id,
        f"{DLQ_FIELD_PREFIX}error": error,
        f"{DLQ_FIELD_PREFIX}attempts": str(attempts),
        f"{DLQ_FIELD_PREFIX}timestamp": datetime.now(timezone.utc).isoformat(),
    }


class RedisDeadLetterQueue:
    """Dead letter queue backed by a Redis Stream.

    Args:
        redis: Raw async Redis client.
        tenant_id: Tenant identifier for DLQ key scoping.
        maxlen: Approximate length cap so a failure storm cannot grow
            the DLQ without bound.
    """

    def __init__(self, redis: aioredis.Redis, tenant_id: str, *, maxlen: int = 10000) -> None:
        self._redis = redis
        self.tenant_id = tenant_id
        self._maxlen = maxlen

    @property
    def key(self) -> str:
        return dlq_key(self.tenant_id)

    async def send(
        self,
        entry_id: str,
        data: dict[str, str],
        error: str,
        attempts: int,
    ) -> str:
        """Move a failed entry to the dead letter queue.

        Args:
            entry_id: Entry ID in the tenant's message stream.
            data: Raw entry data from the stream.
            error: Error message from the last processing attempt.
            attempts: Number of processing attempts made.

        Returns:
            DLQ entry ID assigned by XADD.
        """
        dlq_entry_id = await self._redis.xadd(
            self.key,
            build_dlq_entry(entry_id, data, error, attempts),
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.warning(
            "job_dead_lettered",
            dlq_key=self.key,
            original_id=entry_id,
            error=error,
            attempts=attempts,
        )
        return dlq_entry_id

    async def list_entries(self, count: int = 50) -> list[tuple[str, dict[str, str]]]:
        """List dead-lettered entries, oldest first."""
        return await self._redis.xrange(self.key, count=count)
