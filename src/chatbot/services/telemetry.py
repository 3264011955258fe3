"""Per-tenant business telemetry.

TelemetryRecorder persists response times, message counts, queue
lengths, and errors for each tenant. Recording is best-effort: a failed
write is logged and dropped, never raised into the message pipeline.

Process-level operational metrics (Prometheus) live in
src.chatbot.core.monitoring; this module is the per-tenant history the
admin API serves.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.chatbot.core.errors import TelemetryError
from src.chatbot.models.analytics import AnalyticsMetric

logger = structlog.get_logger(__name__)


class MetricType(str, Enum):
    RESPONSE_TIME = "response_time"
    ERROR = "error"
    MESSAGE_COUNT = "message_count"
    QUEUE_LENGTH = "queue_length"
    GPU_USAGE = "gpu_usage"


class MetricRecord(BaseModel):
    """A stored metric as returned by query()."""

    id: int
    tenant_id: str
    type: MetricType
    value: float
    details: dict[str, Any] | None = None
    timestamp: datetime

    @classmethod
    def from_row(cls, row: AnalyticsMetric) -> MetricRecord:
        return cls(
            id=row.id,
            tenant_id=row.agent_id,
            type=MetricType(row.metric_type),
            value=row.value,
            details=row.details,
            timestamp=row.timestamp,
        )


def _coerce_type(metric_type: MetricType | str) -> MetricType | None:
    try:
        return MetricType(metric_type)
    except ValueError:
        return None


class TelemetryRecorder:
    """Best-effort writer and reader for per-tenant metrics.

    Args:
        session_factory: Async session factory bound to the telemetry DB.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> TelemetryRecorder:
        return cls(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    @property
    def pending(self) -> int:
        """Number of scheduled writes not yet finished."""
        return len(self._pending)

    def log(
        self,
        tenant_id: str,
        metric_type: MetricType | str,
        value: float,
        details: dict[str, Any] | None = None,
    ) -> asyncio.Task | None:
        """Schedule a metric write and return immediately.

        Unknown metric types are dropped with a warning. Must be called
        from a running event loop.

        Returns:
            The background task, or None if nothing was scheduled.
        """
        if _coerce_type(metric_type) is None:
            logger.warning("telemetry_unknown_metric_type", tenant_id=tenant_id, metric_type=str(metric_type))
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("telemetry_no_event_loop", tenant_id=tenant_id, metric_type=str(metric_type))
            return None

        task = loop.create_task(self.record(tenant_id, metric_type, value, details))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def record(
        self,
        tenant_id: str,
        metric_type: MetricType | str,
        value: float,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Write one metric now. Never raises.

        Returns:
            True if the row was stored.
        """
        resolved = _coerce_type(metric_type)
        if resolved is None:
            logger.warning("telemetry_unknown_metric_type", tenant_id=tenant_id, metric_type=str(metric_type))
            return False

        try:
            await self._insert(tenant_id, resolved, value, details)
        except Exception as exc:
            logger.error(
                "telemetry_write_failed",
                tenant_id=tenant_id,
                metric_type=resolved.value,
                error=str(exc),
            )
            return False

        logger.debug("metric_recorded", tenant_id=tenant_id, metric_type=resolved.value, value=value)
        return True

    async def _insert(
        self,
        tenant_id: str,
        metric_type: MetricType,
        value: float,
        details: dict[str, Any] | None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    AnalyticsMetric(
                        agent_id=tenant_id,
                        metric_type=metric_type.value,
                        value=float(value),
                        details=details,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise TelemetryError(f"Failed to store {metric_type.value} metric") from exc

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def query(
        self,
        tenant_id: str,
        metric_type: MetricType | str | None = None,
        limit: int = 50,
    ) -> list[MetricRecord]:
        """Newest-first metrics for a tenant. Returns [] on storage failure.

        Args:
            tenant_id: Tenant whose metrics to read.
            metric_type: Optional filter on a single metric type.
            limit: Maximum rows returned.
        """
        if limit <= 0:
            return []

        stmt = select(AnalyticsMetric).where(AnalyticsMetric.agent_id == tenant_id)
        if metric_type is not None:
            resolved = _coerce_type(metric_type)
            if resolved is None:
                logger.warning("telemetry_unknown_metric_type", tenant_id=tenant_id, metric_type=str(metric_type))
                return []
            stmt = stmt.where(AnalyticsMetric.metric_type == resolved.value)
        stmt = stmt.order_by(AnalyticsMetric.timestamp.desc(), AnalyticsMetric.id.desc()).limit(limit)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except Exception as exc:
            logger.error("telemetry_query_failed", tenant_id=tenant_id, error=str(exc))
            return []

        return [MetricRecord.from_row(row) for row in rows]
