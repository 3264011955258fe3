"""Async SQLAlchemy engine for the telemetry store.

Provides:
- TelemetryBase: Declarative base for telemetry tables
- get_engine(): lazily created engine singleton
- init_db() / close_db(): lifespan hooks
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.chatbot.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.DATABASE_URL.startswith("postgresql"):
            _engine = create_async_engine(
                settings.DATABASE_URL,
                pool_size=10,
                max_overflow=10,
                pool_pre_ping=True,
                echo=False,
            )
        else:
            _engine = create_async_engine(settings.DATABASE_URL, echo=False)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class TelemetryBase(DeclarativeBase):
    """Base class for telemetry tables (tenant id is a column, not a schema)."""


# ── Lifecycle ───────────────────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create telemetry tables if they don't exist.

    Production deployments run the Alembic migration instead; this keeps
    local and test databases usable without a migration step.
    """
    # Imported for its side effect of registering the table on the metadata.
    from src.chatbot.models import analytics  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(TelemetryBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and its connection pool."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
