"""Shared Redis connection pool.

Redis carries the event streams (``src.app.events.bus``) and the per-trace
flow log trail (``src.app.events.trail``).
The pool is safe for concurrent use by every in-flight trace.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.app.config import get_settings

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
        await _redis_pool.close()
        _redis_pool = None
