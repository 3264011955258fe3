"""Shared async Redis connection pool.

Tenant isolation for queue data is done by key prefix (t:{tenant_id}:...)
inside the queue stream and DLQ classes, so a single pool serves every
tenant.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.chatbot.config import get_settings

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None
