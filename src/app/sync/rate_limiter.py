"""Global rate limiting for NetSuite calls.

Two interchangeable limiters, both exposing ``async acquire()``:
- AsyncRateLimiter: Process-wide spacing with an asyncio lock and monotonic clock
- RedisRateLimiter: Cross-process slot reservation via SET NX PX on a shared key

Only remote calls are throttled; database work never waits on a limiter.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_REDIS_KEY = "opms_sync:netsuite:rate_limit"


class AsyncRateLimiter:
    """Allow at most ``rate_per_second`` acquisitions per second in this process.

    Args:
        rate_per_second: Calls allowed per second. Must be positive.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        rate_per_second: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self._interval = 1.0 / rate_per_second
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    @property
    def interval(self) -> float:
        return self._interval

    async def acquire(self) -> float:
        """Wait for the next slot. Returns the seconds spent waiting."""
        async with self._lock:
            now = self._clock()
            wait = max(0.0, self._next_allowed - now)
            if wait > 0:
                await self._sleep(wait)
            self._next_allowed = max(now, self._next_allowed) + self._interval
            return wait


class RedisRateLimiter:
    """Share one call slot per interval across every process using Redis.

    A slot is claimed with ``SET key token NX PX interval_ms``; while the key
    lives, other callers poll until it expires.

    Args:
        redis: redis.asyncio client.
        rate_per_second: Calls allowed per second across all processes.
        key: Shared Redis key.
        poll_seconds: Upper bound on the wait between claim attempts.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        rate_per_second: float = 1.0,
        key: str = DEFAULT_REDIS_KEY,
        poll_seconds: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self._redis = redis
        self._interval_ms = max(1, int(1000 / rate_per_second))
        self._key = key
        self._poll_seconds = poll_seconds
        self._sleep = sleep

    async def acquire(self) -> float:
        """Wait until this process holds the shared slot. Returns seconds waited."""
        waited = 0.0
        token = f"{time.time_ns()}"
        while True:
            claimed = await self._redis.set(self._key, token, nx=True, px=self._interval_ms)
            if claimed:
                return waited
            ttl_ms = await self._redis.pttl(self._key)
            delay = self._poll_seconds
            if ttl_ms and ttl_ms > 0:
                delay = min(ttl_ms / 1000.0, self._poll_seconds)
            await self._sleep(delay)
            waited += delay
