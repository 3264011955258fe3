"""Per-tenant message queues.

Provides tenant-isolated FIFO queues on Redis Streams (or an in-process
backend), one sequential worker per tenant with exponential-backoff
retry, and dead letter handling.

Exports:
    NormalizedMessage: Canonical inbound message produced by intake.
    Job: Queued unit of work wrapping a NormalizedMessage.
    DeadLetter: Review view of a job that exhausted its attempts.
    QueueRegistry: Lazily created per-tenant queues and workers.
    TenantWorker: Sequential consumer for one tenant's stream.
    create_queue_backend: Backend factory driven by QUEUE_BACKEND.
"""

from __future__ import annotations

from src.chatbot.queue.schemas import DeadLetter, Job, NormalizedMessage

__all__ = [
    "DeadLetter",
    "Job",
    "NormalizedMessage",
    "QueueRegistry",
    "TenantWorker",
    "create_queue_backend",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load registry, worker, and backend to avoid circular imports."""
    if name == "QueueRegistry":
        from src.chatbot.queue.registry import QueueRegistry

        return QueueRegistry
    if name == "TenantWorker":
        from src.chatbot.queue.worker import TenantWorker

        return TenantWorker
    if name == "create_queue_backend":
        from src.chatbot.queue.backend import create_queue_backend

        return create_queue_backend
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
