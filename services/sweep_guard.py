"""
Minimum-interval guards for the payment timeout sweep.

A guard answers one question: has a sweep started within the last N seconds?
It is a run marker, not a mutual-exclusion lock. A sweep that takes longer
than the interval can still overlap with the next one; the sweep's own
conditional UPDATEs keep that safe.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from redis.asyncio import Redis

from services.clock import as_utc, utcnow


class InMemorySweepGuard:
    """Per-process guard, the default"""

    def __init__(self):
        self._last_run: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    async def try_acquire(self, now: Optional[datetime] = None, min_interval_seconds: float = 0) -> bool:
        now = as_utc(now) or utcnow()
        async with self._lock:
            if (
                min_interval_seconds > 0
                and self._last_run is not None
                and now - self._last_run < timedelta(seconds=min_interval_seconds)
            ):
                return False
            self._last_run = now
            return True

    async def reset(self) -> None:
        async with self._lock:
            self._last_run = None


class RedisSweepGuard:
    """
    Guard shared by every worker pointing at the same Redis.

    The marker is a key set with NX and a TTL equal to the interval, so only
    one worker per interval gets True. The interval runs on Redis' own TTL
    clock: `now` is stored as the last run time but does not decide whether
    the interval has passed. A zero interval always runs and leaves the
    marker alone, so it can never outlive a later interval.
    """

    def __init__(self, redis: Redis, key: str = "sweep:payment_timeout:last_run"):
        self.redis = redis
        self.key = key

    async def try_acquire(self, now: Optional[datetime] = None, min_interval_seconds: float = 0) -> bool:
        now = as_utc(now) or utcnow()
        if min_interval_seconds <= 0:
            return True

        ttl_ms = max(int(min_interval_seconds * 1000), 1)
        acquired = await self.redis.set(self.key, now.isoformat(), nx=True, px=ttl_ms)
        if not acquired:
            logger.debug("Sweep skipped, another worker ran it within the interval")
        return bool(acquired)

    async def last_run(self) -> Optional[datetime]:
        value = await self.redis.get(self.key)
        if value is None:
            return None
        return as_utc(value.decode() if isinstance(value, bytes) else value)

    async def reset(self) -> None:
        await self.redis.delete(self.key)


async def create_sweep_guard(redis_url: str, use_redis: bool):
    """Redis guard when asked for and reachable, in-memory otherwise"""
    if not use_redis:
        return InMemorySweepGuard()

    try:
        redis_client = Redis.from_url(redis_url)
        await redis_client.ping()
        logger.info("Sweep guard: Redis")
        return RedisSweepGuard(redis_client)
    except Exception as e:
        logger.warning(f"Redis unavailable ({e}), sweep guard falls back to memory")
        return InMemorySweepGuard()
