import time

import pytest

from reelforge.services import redis_semaphore
from reelforge.services.redis_semaphore import RedisRateLimiter, acquire, hold, release, reset_client


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ── Rate limiter ─────────────────────────────────────────────

@pytest.fixture
def clock(fake_redis):
    clock = FakeClock()
    fake_redis.clock = clock
    return clock


def _limiter(clock, name="ytdlp", window_ms=3000) -> RedisRateLimiter:
    return RedisRateLimiter(name, window_ms, clock=clock, sleep=clock.sleep)


async def test_first_caller_takes_the_window(fake_redis, clock):
    assert await _limiter(clock).wait() == 0.0
    assert clock.sleeps == []
    assert fake_redis.strings["ratelimit:ytdlp"][1] == 3.0


async def test_second_process_waits_out_the_window(fake_redis, clock):
    # two workers, same key: the second sleeps for the key's remaining TTL
    await _limiter(clock).wait()
    clock.now = 1.0

    waited = await _limiter(clock).wait()

    assert waited == 2.0
    assert clock.sleeps == [2.0]
    assert fake_redis.strings["ratelimit:ytdlp"][1] == 6.0


async def test_no_wait_once_window_passed(clock):
    limiter = _limiter(clock)
    await limiter.wait()
    clock.now += 10

    assert await limiter.wait() == 0.0
    assert clock.sleeps == []


async def test_limiters_with_different_names_do_not_share(clock):
    await _limiter(clock, "ytdlp").wait()
    assert await _limiter(clock, "other").wait() == 0.0


# ── Semaphore ────────────────────────────────────────────────

async def test_full_semaphore_times_out(fake_redis):
    token = await acquire("render", 1, ttl_sec=900, wait_timeout_sec=0)

    with pytest.raises(TimeoutError, match="limit=1, current=1"):
        await acquire("render", 1, ttl_sec=900, wait_timeout_sec=0)

    await release("render", token)
    assert await fake_redis.zcard("sem:render") == 0
    assert await acquire("render", 1, ttl_sec=900, wait_timeout_sec=0)


async def test_crashed_holder_slot_is_reclaimed(fake_redis):
    fake_redis.zsets["sem:render"] = {"dead-holder": time.time() - 1}

    token = await acquire("render", 1, ttl_sec=900, wait_timeout_sec=0)

    assert list(fake_redis.zsets["sem:render"]) == [token]
    assert 899 <= fake_redis.zsets["sem:render"][token] - time.time() <= 900


async def test_hold_releases_on_error(fake_redis):
    with pytest.raises(RuntimeError):
        async with hold("render", 1, ttl_sec=900, wait_timeout_sec=0):
            assert await fake_redis.zcard("sem:render") == 1
            raise RuntimeError("render crashed")

    assert await fake_redis.zcard("sem:render") == 0


async def test_releasing_expired_token_is_harmless(fake_redis, caplog):
    await release("render", "gone-token")
    assert "not found" in caplog.text


async def test_reset_closes_shared_client(fake_redis):
    await reset_client()

    assert fake_redis.closed
    assert redis_semaphore._redis_client is None
    # a second reset has nothing to close
    await reset_client()
