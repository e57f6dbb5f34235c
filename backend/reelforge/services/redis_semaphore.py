"""
Redis coordination primitives shared by all worker processes.

Semaphore: a Redis sorted set (ZSET) where:
- key: sem:{name}
- members: unique holder tokens (UUIDs)
- scores: expiry timestamps (unix epoch), so a crashed holder frees its slot

Expired tokens are cleaned up on every acquire attempt.

Rate limiter: one grant per window across every process, via
SET ratelimit:{name} NX PX <window>.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

import redis.asyncio as aioredis

from reelforge.settings import get_settings

logger = logging.getLogger(__name__)

_redis_client: aioredis.Redis | None = None


def _get_redis() -> aioredis.Redis:
    """Get or create a shared async Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_client


async def reset_client() -> None:
    """Drop the cached client (each Celery job runs in a fresh event loop)."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def _sem_key(name: str) -> str:
    return f"sem:{name}"


async def acquire(
    name: str,
    limit: int,
    *,
    ttl_sec: int | None = None,
    wait_timeout_sec: int | None = None,
) -> str:
    """Acquire a semaphore slot.

    Args:
        name: semaphore name (e.g. "render")
        limit: max concurrent holders
        ttl_sec: token TTL in seconds; a holder that dies keeps its slot
            at most this long
        wait_timeout_sec: max seconds to wait for a free slot

    Returns:
        token string (must be passed to release())

    Raises:
        TimeoutError: if wait_timeout_sec exceeded
    """
    settings = get_settings()
    if ttl_sec is None:
        ttl_sec = settings.redis_semaphore_ttl_sec
    if wait_timeout_sec is None:
        wait_timeout_sec = settings.semaphore_wait_timeout_sec

    r = _get_redis()
    key = _sem_key(name)
    token = str(uuid.uuid4())
    deadline = time.monotonic() + wait_timeout_sec
    backoff = 1.0

    while True:
        now_ts = time.time()

        # Cleanup expired tokens
        await r.zremrangebyscore(key, "-inf", now_ts)
        current = await r.zcard(key)

        if current < limit:
            added = await r.zadd(key, {token: now_ts + ttl_sec}, nx=True)
            if added:
                # two holders may have passed the zcard check together
                new_count = await r.zcard(key)
                if new_count > limit:
                    # over the limit: back out and wait for a slot
                    await r.zrem(key, token)
                else:
                    logger.info(
                        f"[semaphore] Acquired '{name}' slot (token={token[:8]}…, "
                        f"count={new_count}/{limit})"
                    )
                    return token

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(
                f"Semaphore '{name}': timed out waiting {wait_timeout_sec}s "
                f"for slot (limit={limit}, current={current})"
            )

        wait = min(backoff, remaining)
        logger.debug(f"[semaphore] '{name}' full ({current}/{limit}), waiting {wait:.1f}s")
        await asyncio.sleep(wait)
        backoff = min(backoff * 1.5, 5.0)


async def release(name: str, token: str) -> None:
    """Release a semaphore slot.

    Args:
        name: semaphore name
        token: token returned by acquire()
    """
    r = _get_redis()
    key = _sem_key(name)
    removed = await r.zrem(key, token)
    current = await r.zcard(key)
    if removed:
        logger.info(f"[semaphore] Released '{name}' slot (token={token[:8]}…, remaining={current})")
    else:
        logger.warning(
            f"[semaphore] Release '{name}': token {token[:8]}… not found "
            f"(already expired or released)"
        )


@asynccontextmanager
async def hold(name: str, limit: int, **kwargs) -> AsyncIterator[str]:
    """Hold a slot for the duration of the block; kwargs go to acquire()."""
    token = await acquire(name, limit, **kwargs)
    try:
        yield token
    finally:
        await release(name, token)


class RedisRateLimiter:
    """Minimum interval between calls, shared by every worker process.

    The window key is set with NX PX, so whoever sets it owns the next
    `window_ms`; everyone else sleeps for the key's remaining TTL and tries
    again.
    """

    def __init__(
        self,
        name: str,
        window_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.key = f"ratelimit:{name}"
        self.window_ms = window_ms
        self._clock = clock
        self._sleep = sleep

    async def wait(self) -> float:
        """Block until this caller owns the current window; returns seconds waited."""
        r = _get_redis()
        token = uuid.uuid4().hex
        started = self._clock()
        while True:
            if await r.set(self.key, token, nx=True, px=self.window_ms):
                waited = self._clock() - started
                if waited > 0.05:
                    logger.info(f"[intake] rate limiter {self.key}: waited {waited:.1f}s")
                return waited
            ttl_ms = await r.pttl(self.key)
            # -2: key expired between SET and PTTL
            await self._sleep(max(ttl_ms, 50) / 1000)

