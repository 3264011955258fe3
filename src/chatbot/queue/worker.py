"""Per-tenant queue worker with in-place retry and dead-lettering.

A TenantWorker is the single consumer of one tenant's stream. It reads
one entry at a time, deserializes it into a Job, and awaits the
processor. A processor failure is retried in place with exponential
backoff so the next entry is never started before the current one is
terminal; after the attempt limit the entry is moved to the dead letter
queue and acknowledged.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import structlog

from src.chatbot.core.monitoring import active_workers, jobs_processed_total
from src.chatbot.core.tenant import tenant_scope
from src.chatbot.queue.backend import DeadLetterStore, TenantStream
from src.chatbot.queue.schemas import Job

logger = structlog.get_logger(__name__)

JobProcessor = Callable[[Job], Awaitable[object]]


class TenantWorker:
    """Sequential consumer for one tenant's message stream.

    Args:
        tenant_id: Tenant whose stream this worker owns.
        stream: The tenant's message stream.
        dlq: The tenant's dead letter queue.
        processor: Async callable run once per attempt. Must raise on
            failure for retry to engage.
        consumer_name: Consumer identifier within the stream's group.
        max_attempts: Attempts per entry before dead-lettering.
        retry_delays: Backoff delays in seconds, indexed by attempt.
        block_ms: How long a read waits for a new entry.
    """

    MAX_ATTEMPTS: int = 3
    RETRY_DELAYS: Sequence[float] = (1.0, 4.0, 16.0)

    def __init__(
        self,
        tenant_id: str,
        stream: TenantStream,
        dlq: DeadLetterStore,
        processor: JobProcessor,
        *,
        consumer_name: str = "dispatcher",
        max_attempts: int | None = None,
        retry_delays: Sequence[float] | None = None,
        block_ms: int = 5000,
    ) -> None:
        self.tenant_id = tenant_id
        self._stream = stream
        self._dlq = dlq
        self._processor = processor
        self._consumer_name = consumer_name
        self._max_attempts = max_attempts if max_attempts is not None else self.MAX_ATTEMPTS
        self._retry_delays = tuple(retry_delays if retry_delays is not None else self.RETRY_DELAYS)
        self._block_ms = block_ms
        self._running = False
        self._draining = False
        self._busy = False

    @property
    def busy(self) -> bool:
        """True while an entry is being processed."""
        return self._busy

    @property
    def draining(self) -> bool:
        return self._draining

    def stop(self) -> None:
        """Stop after the current entry without draining the backlog."""
        self._running = False

    def drain(self) -> None:
        """Process every queued entry, then exit once the stream is empty."""
        self._draining = True

    async def run(self) -> None:
        """Main loop: reclaim abandoned entries, then read, process, ack."""
        with tenant_scope(self.tenant_id):
            self._running = True
            active_workers.inc()
            logger.info("worker_started", consumer=self._consumer_name)
            try:
                await self._stream.ensure_group()
                for entry_id, raw, times_delivered in await self._stream.reclaim(self._consumer_name):
                    if not self._running:
                        return
                    await self._handle_entry(entry_id, raw, previous_attempts=times_delivered - 1)

                while self._running:
                    entries = await self._stream.read(
                        self._consumer_name,
                        block_ms=None if self._draining else self._block_ms,
                    )
                    if not entries:
                        if self._draining:
                            logger.info("worker_drained")
                            break
                        continue
                    for entry_id, raw in entries:
                        await self._handle_entry(entry_id, raw, previous_attempts=0)
            finally:
                self._running = False
                active_workers.dec()
                logger.info("worker_stopped", consumer=self._consumer_name)

    async def _handle_entry(
        self,
        entry_id: str,
        raw: dict[str, str],
        previous_attempts: int,
    ) -> None:
        """Run one entry to a terminal state: acked or dead-lettered.

        Args:
            entry_id: Stream entry ID.
            raw: Raw string dict from the stream.
            previous_attempts: Deliveries already spent on this entry by
                an earlier consumer.
        """
        self._busy = True
        try:
            try:
                job = Job.from_stream_dict(raw)
            except (KeyError, ValueError) as exc:
                await self._dead_letter(entry_id, raw, f"undecodable payload: {exc}", previous_attempts)
                return

            attempt = previous_attempts
            last_error = "attempt limit reached before processing"
            while attempt < self._max_attempts:
                attempt += 1
                try:
                    await self._processor(job.model_copy(update={"attempt_count": attempt}))
                except Exception as exc:
                    last_error = str(exc) or type(exc).__name__
                    logger.warning(
                        "job_processing_failed",
                        job_id=job.id,
                        entry_id=entry_id,
                        attempt=attempt,
                        error=last_error,
                    )
                    if attempt < self._max_attempts and self._retry_delays:
                        delay = self._retry_delays[min(attempt - 1, len(self._retry_delays) - 1)]
                        await asyncio.sleep(delay)
                    continue

                await self._stream.ack(entry_id)
                jobs_processed_total.labels(tenant_id=self.tenant_id, outcome="completed").inc()
                logger.debug("job_acked", job_id=job.id, entry_id=entry_id, attempt=attempt)
                return

            await self._dead_letter(entry_id, raw, last_error, attempt)
        finally:
            self._busy = False

    async def _dead_letter(
        self,
        entry_id: str,
        raw: dict[str, str],
        error: str,
        attempts: int,
    ) -> None:
        await self._dlq.send(entry_id, raw, error, attempts)
        await self._stream.ack(entry_id)
        jobs_processed_total.labels(tenant_id=self.tenant_id, outcome="dead_lettered").inc()
        logger.error(
            "job_sent_to_dlq",
            entry_id=entry_id,
            attempts=attempts,
            error=error,
        )
