"""In-process queue backend for local runs and tests.

Mirrors the Redis stream/DLQ contract (entry IDs, pending entries,
delivery counts, reclaim) on top of asyncio primitives. State lives only
as long as the process.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque

from src.chatbot.queue.dlq import build_dlq_entry
from src.chatbot.queue.schemas import Job

_entry_counter = itertools.count(1)


def _next_entry_id() -> str:
    return f"{int(time.time() * 1000)}-{next(_entry_counter)}"


class InMemoryTenantStream:
    """One tenant's FIFO with a pending-entries list."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self._entries: deque[tuple[str, dict[str, str]]] = deque()
        # entry_id -> [data, times_delivered]
        self._pending: dict[str, list] = {}
        self._available = asyncio.Event()

    async def ensure_group(self) -> None:
        return None

    async def append(self, job: Job) -> str:
        entry_id = _next_entry_id()
        self._entries.append((entry_id, job.to_stream_dict()))
        self._available.set()
        return entry_id

    async def read(
        self,
        consumer: str,
        block_ms: int | None,
    ) -> list[tuple[str, dict[str, str]]]:
        if not self._entries and block_ms:
            self._available.clear()
            try:
                await asyncio.wait_for(self._available.wait(), timeout=block_ms / 1000)
            except asyncio.TimeoutError:
                return []
        if not self._entries:
            return []
        entry_id, data = self._entries.popleft()
        self._pending[entry_id] = [data, 1]
        return [(entry_id, dict(data))]

    async def reclaim(self, consumer: str) -> list[tuple[str, dict[str, str], int]]:
        reclaimed = []
        for entry_id, record in self._pending.items():
            record[1] += 1
            reclaimed.append((entry_id, dict(record[0]), record[1]))
        return reclaimed

    async def delivery_count(self, entry_id: str) -> int:
        record = self._pending.get(entry_id)
        return record[1] if record else 1

    async def ack(self, entry_id: str) -> None:
        self._pending.pop(entry_id, None)

    async def length(self) -> int:
        return len(self._entries) + len(self._pending)


class InMemoryDeadLetterQueue:
    """Append-only list of dead-lettered entries."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self._entries: list[tuple[str, dict[str, str]]] = []

    async def send(
        self,
        entry_id: str,
        data: dict[str, str],
        error: str,
        attempts: int,
    ) -> str:
        dlq_entry_id = _next_entry_id()
        self._entries.append((dlq_entry_id, build_dlq_entry(entry_id, data, error, attempts)))
        return dlq_entry_id

    async def list_entries(self, count: int = 50) -> list[tuple[str, dict[str, str]]]:
        return list(self._entries[:count])


class InMemoryQueueBackend:
    """Queue backend that keeps every tenant's stream in process memory."""

    def __init__(self) -> None:
        self._streams: dict[str, InMemoryTenantStream] = {}
        self._dlqs: dict[str, InMemoryDeadLetterQueue] = {}

    def open_stream(self, tenant_id: str) -> InMemoryTenantStream:
        if tenant_id not in self._streams:
            self._streams[tenant_id] = InMemoryTenantStream(tenant_id)
        return self._streams[tenant_id]

    def open_dlq(self, tenant_id: str) -> InMemoryDeadLetterQueue:
        if tenant_id not in self._dlqs:
            self._dlqs[tenant_id] = InMemoryDeadLetterQueue(tenant_id)
        return self._dlqs[tenant_id]

    async def tenants_with_backlog(self) -> list[str]:
        tenants = []
        for tenant_id, stream in self._streams.items():
            if await stream.length():
                tenants.append(tenant_id)
        return sorted(tenants)

    async def ping(self) -> bool:
        return True
