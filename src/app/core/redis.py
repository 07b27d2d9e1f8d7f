"""Shared Redis connection pool.

Used by the Redis-backed NetSuite rate limiter so every worker process
draws from one request slot, and by the readiness probe.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.app.config import get_settings

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(get_settings().REDIS_URL, decode_responses=True)
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None
