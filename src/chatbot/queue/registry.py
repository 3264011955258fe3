"""Registry of per-tenant queues and their workers.

The registry owns the tenant_id -> queue map. Queues are created lazily on
first use; creation is serialized by a lock taken only on that slow path,
so steady-state enqueues never contend across tenants. Each tenant has at
most one live worker task at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from functools import partial

import structlog

from src.chatbot.core.errors import QueueError
from src.chatbot.queue.backend import DeadLetterStore, QueueBackend, TenantStream
from src.chatbot.queue.schemas import DeadLetter, Job, NormalizedMessage
from src.chatbot.queue.worker import JobProcessor, TenantWorker

logger = structlog.get_logger(__name__)


@dataclass
class TenantQueue:
    """Handles for one tenant's stream and dead letter queue."""

    tenant_id: str
    stream: TenantStream
    dlq: DeadLetterStore


@dataclass
class _WorkerHandle:
    worker: TenantWorker
    task: asyncio.Task


class QueueRegistry:
    """Per-tenant queues with exactly one consumer task per tenant.

    Args:
        backend: Stream/DLQ provider (Redis or in-process).
        max_attempts: Processing attempts per job before dead-lettering.
        retry_delays: Backoff delays in seconds between attempts.
        block_ms: Worker read block time in milliseconds.
        consumer_name: Consumer name workers register in each group.
    """

    def __init__(
        self,
        backend: QueueBackend,
        *,
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (1.0, 4.0, 16.0),
        block_ms: int = 5000,
        consumer_name: str = "dispatcher",
    ) -> None:
        self._backend = backend
        self._max_attempts = max_attempts
        self._retry_delays = tuple(retry_delays)
        self._block_ms = block_ms
        self._consumer_name = consumer_name
        self._queues: dict[str, TenantQueue] = {}
        self._workers: dict[str, _WorkerHandle] = {}
        self._lock = asyncio.Lock()

    async def _get_queue(self, tenant_id: str) -> TenantQueue:
        queue = self._queues.get(tenant_id)
        if queue is not None:
            return queue

        async with self._lock:
            return await self._open_queue(tenant_id)

    async def _open_queue(self, tenant_id: str) -> TenantQueue:
        # Caller holds self._lock.
        queue = self._queues.get(tenant_id)
        if queue is None:
            stream = self._backend.open_stream(tenant_id)
            await stream.ensure_group()
            queue = TenantQueue(
                tenant_id=tenant_id,
                stream=stream,
                dlq=self._backend.open_dlq(tenant_id),
            )
            self._queues[tenant_id] = queue
            logger.info("tenant_queue_created", tenant_id=tenant_id)
        return queue

    async def enqueue(self, tenant_id: str, message: NormalizedMessage) -> Job:
        """Append a message to the tenant's queue.

        Returns:
            The queued Job; its ``id`` is the message ID given to callers.

        Raises:
            ValueError: If the message belongs to another tenant.
            QueueError: If the queue transport is unavailable.
        """
        if message.tenant_id != tenant_id:
            msg = f"Message tenant_id '{message.tenant_id}' does not match queue tenant_id '{tenant_id}'"
            raise ValueError(msg)

        job = Job(message=message)
        try:
            queue = await self._get_queue(tenant_id)
            entry_id = await queue.stream.append(job)
        except Exception as exc:
            logger.error("enqueue_failed", tenant_id=tenant_id, job_id=job.id, error=str(exc))
            raise QueueError(f"Failed to enqueue message for tenant '{tenant_id}'") from exc

        logger.info("message_enqueued", tenant_id=tenant_id, job_id=job.id, entry_id=entry_id)
        return job

    async def ensure_worker(self, tenant_id: str, processor: JobProcessor) -> TenantWorker:
        """Start the tenant's worker if it is not already running.

        Safe to call on every enqueue: repeated and concurrent calls start
        exactly one worker. A worker that has exited is replaced.

        Raises:
            QueueError: If the tenant's queue cannot be created.
        """
        handle = self._workers.get(tenant_id)
        if handle is not None and not handle.task.done():
            return handle.worker

        async with self._lock:
            handle = self._workers.get(tenant_id)
            if handle is not None and not handle.task.done():
                return handle.worker
            try:
                queue = await self._open_queue(tenant_id)
            except Exception as exc:
                raise QueueError(f"Failed to open queue for tenant '{tenant_id}'") from exc
            return self._start_worker(queue, processor).worker

    def _start_worker(self, queue: TenantQueue, processor: JobProcessor) -> _WorkerHandle:
        worker = TenantWorker(
            queue.tenant_id,
            queue.stream,
            queue.dlq,
            processor,
            consumer_name=self._consumer_name,
            max_attempts=self._max_attempts,
            retry_delays=self._retry_delays,
            block_ms=self._block_ms,
        )
        task = asyncio.create_task(worker.run(), name=f"tenant-worker:{queue.tenant_id}")
        handle = _WorkerHandle(worker=worker, task=task)
        self._workers[queue.tenant_id] = handle
        task.add_done_callback(partial(self._on_worker_done, queue.tenant_id))
        return handle

    def _on_worker_done(self, tenant_id: str, task: asyncio.Task) -> None:
        handle = self._workers.get(tenant_id)
        if handle is not None and handle.task is task:
            del self._workers[tenant_id]

        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "worker_crashed",
                tenant_id=tenant_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def worker_active(self, tenant_id: str) -> bool:
        handle = self._workers.get(tenant_id)
        return handle is not None and not handle.task.done()

    async def queue_length(self, tenant_id: str) -> int:
        """Backlog size (queued plus in-flight) for a tenant.

        Raises:
            QueueError: If the queue transport is unavailable.
        """
        try:
            queue = await self._get_queue(tenant_id)
            return await queue.stream.length()
        except Exception as exc:
            raise QueueError(f"Failed to read queue length for tenant '{tenant_id}'") from exc

    async def dead_letters(self, tenant_id: str, count: int = 50) -> list[DeadLetter]:
        """List a tenant's dead-lettered jobs, oldest first.

        Raises:
            QueueError: If the queue transport is unavailable.
        """
        try:
            queue = await self._get_queue(tenant_id)
            entries = await queue.dlq.list_entries(count=count)
        except Exception as exc:
            raise QueueError(f"Failed to read dead letters for tenant '{tenant_id}'") from exc
        return [DeadLetter.from_stream_entry(entry_id, data) for entry_id, data in entries]

    async def offboard(self, tenant_id: str, processor: JobProcessor | None = None) -> None:
        """Drain and retire a tenant's worker.

        The in-flight job and every job already queued run to completion
        before the worker exits. If no worker is running and a processor
        is given, one is started in drain mode to empty the backlog.
        The tenant's queue handle is dropped afterwards; a later enqueue
        recreates it.
        """
        handle = self._workers.get(tenant_id)
        if (handle is None or handle.task.done()) and processor is not None:
            async with self._lock:
                handle = self._workers.get(tenant_id)
                if handle is None or handle.task.done():
                    queue = await self._open_queue(tenant_id)
                    handle = self._start_worker(queue, processor)

        if handle is not None and not handle.task.done():
            handle.worker.drain()
            await asyncio.gather(handle.task, return_exceptions=True)

        self._queues.pop(tenant_id, None)
        logger.info("tenant_offboarded", tenant_id=tenant_id)

    async def resume(self, processor: JobProcessor) -> list[str]:
        """Start workers for every tenant that still has queued entries.

        Called at startup so a backlog left by a previous process does not
        wait for that tenant's next inbound message.

        Returns:
            Tenant IDs whose workers were started.
        """
        try:
            tenants = await self._backend.tenants_with_backlog()
        except Exception as exc:
            raise QueueError("Failed to list tenants with queued messages") from exc
        for tenant_id in tenants:
            await self.ensure_worker(tenant_id, processor)
        if tenants:
            logger.info("workers_resumed", tenants=len(tenants))
        return tenants

    async def aclose(self) -> None:
        """Stop every worker after its in-flight job; queued jobs are kept."""
        handles = list(self._workers.values())
        for handle in handles:
            handle.worker.stop()
            if not handle.worker.busy:
                handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        self._workers.clear()
        logger.info("queue_registry_closed", workers=len(handles))
