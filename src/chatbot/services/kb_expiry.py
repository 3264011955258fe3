"""Inactivity expiry for tenant knowledge bases.

Knowledge bases are ephemeral: a tenant's chunks are deleted once the
tenant has seen no activity (intake, knowledge load, or retrieval) for
KB_INACTIVITY_TTL seconds. Activity is tracked in process; a periodic
sweep started from the app lifespan deletes expired knowledge bases.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from src.chatbot.core.errors import VectorStoreError
from src.knowledge.qdrant_client import QdrantKnowledgeStore

logger = structlog.get_logger(__name__)


class KnowledgeBaseExpiry:
    """Tracks per-tenant activity and deletes idle knowledge bases.

    Args:
        store: Vector store holding the knowledge bases.
        ttl_seconds: Idle time after which a tenant's chunks are deleted.
            Zero or less disables expiry.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        store: QdrantKnowledgeStore,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._last_seen: dict[str, float] = {}
        self._task: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    @property
    def tracked(self) -> list[str]:
        return sorted(self._last_seen)

    def touch(self, tenant_id: str) -> None:
        """Record activity for a tenant, restarting its idle timer."""
        if self.enabled:
            self._last_seen[tenant_id] = self._clock()

    def forget(self, tenant_id: str) -> None:
        """Stop tracking a tenant whose knowledge base was deleted."""
        self._last_seen.pop(tenant_id, None)

    def expired(self) -> list[str]:
        """Tenants idle for longer than the TTL."""
        if not self.enabled:
            return []
        now = self._clock()
        return [t for t, seen in self._last_seen.items() if now - seen >= self._ttl]

    async def sweep(self) -> list[str]:
        """Delete the knowledge base of every expired tenant.

        A tenant whose delete fails stays tracked and is retried on the
        next sweep.

        Returns:
            Tenant IDs whose knowledge bases were deleted.
        """
        deleted: list[str] = []
        for tenant_id in self.expired():
            try:
                await self._store.delete(tenant_id)
            except VectorStoreError as exc:
                logger.warning("kb_expiry_delete_failed", tenant_id=tenant_id, error=str(exc))
                continue
            self.forget(tenant_id)
            deleted.append(tenant_id)
            logger.info("kb_expired", tenant_id=tenant_id, ttl_seconds=self._ttl)
        return deleted

    def start(self, interval_seconds: float) -> asyncio.Task | None:
        """Run sweep() every ``interval_seconds`` in a background task."""
        if not self.enabled or self._task is not None:
            return self._task

        async def _loop() -> None:
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.sweep()
                except asyncio.CancelledError:
                    logger.info("kb_expiry_stopped")
                    raise
                except Exception:
                    logger.warning("kb_expiry_sweep_error", exc_info=True)

        self._task = asyncio.create_task(_loop(), name="kb_expiry_sweep")
        logger.info("kb_expiry_started", ttl_seconds=self._ttl, interval_seconds=interval_seconds)
        return self._task

    async def aclose(self) -> None:
        """Cancel the sweep task."""
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
