from __future__ import annotations

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from conduit_ai.cache import MemoryStore, RedisStore
from conduit_ai.errors import RateLimitExceeded
from conduit_ai.security import RateLimiter
from conduit_ai.settings import AppSettings


@pytest.mark.asyncio
async def test_ratelimit():
    limiter = RateLimiter(MemoryStore(), limit=2)

    await limiter.check_rate_limit("groq", "u1")
    await limiter.check_rate_limit("groq", "u1")
    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.check_rate_limit("groq", "u1")

    assert exc_info.value.provider == "groq"
    assert exc_info.value.limit == 2
    assert exc_info.value.retry_after == 60


@pytest.mark.asyncio
async def test_counters_are_per_provider_and_user():
    limiter = RateLimiter(MemoryStore(), limit=1)

    await limiter.check_rate_limit("groq", "u1")
    await limiter.check_rate_limit("gemini", "u1")
    await limiter.check_rate_limit("groq", "u2")

    with pytest.raises(RateLimitExceeded):
        await limiter.check_rate_limit("groq", "u1")


@pytest.mark.asyncio
async def test_anonymous_requests_bypass():
    store = MemoryStore()
    limiter = RateLimiter(store, limit=1)

    for _ in range(5):
        await limiter.check_rate_limit("groq", None)

    assert (await store.info())["keys"] == 0


@pytest.mark.asyncio
async def test_remaining_and_reset():
    limiter = RateLimiter(MemoryStore(), limit=3)
    assert await limiter.remaining("groq", "u1") == 3

    await limiter.check_rate_limit("groq", "u1")
    assert await limiter.remaining("groq", "u1") == 2

    await limiter.reset("groq", "u1")
    assert await limiter.remaining("groq", "u1") == 3


@pytest.mark.asyncio
async def test_window_key_and_ttl():
    store = MemoryStore()
    limiter = RateLimiter(store, limit=5, window_seconds=60)
    await limiter.check_rate_limit("ollama", "u1")
    assert await store.get("ratelimit:ai:ollama:u1") == 1


def test_from_settings():
    settings = AppSettings(_env_file=None, rate_limit_per_minute=7)
    limiter = RateLimiter.from_settings(MemoryStore(), settings)
    assert limiter.limit == 7
    assert limiter.window_seconds == 60


@pytest_asyncio.fixture(loop_scope="function")
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.mark.asyncio
async def test_ratelimit_with_redis(redis_client):
    limiter = RateLimiter(RedisStore(redis_client), limit=2)

    await limiter.check_rate_limit("groq", "u1")
    await limiter.check_rate_limit("groq", "u1")
    with pytest.raises(RateLimitExceeded):
        await limiter.check_rate_limit("groq", "u1")

    assert 0 < await redis_client.ttl("ratelimit:ai:groq:u1") <= 60


@pytest.mark.asyncio
async def test_retry_after_is_time_left_in_window():
    now = [1000.0]
    limiter = RateLimiter(MemoryStore(clock=lambda: now[0]), limit=1, window_seconds=60)

    await limiter.check_rate_limit("groq", "u1")
    now[0] += 45
    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.check_rate_limit("groq", "u1")

    assert exc_info.value.retry_after == 15
    assert exc_info.value.details["retry_after"] == 15


@pytest.mark.asyncio
async def test_retry_after_with_redis(redis_client):
    limiter = RateLimiter(RedisStore(redis_client), limit=1)

    await limiter.check_rate_limit("gemini", "u1")
    await redis_client.expire("ratelimit:ai:gemini:u1", 20)
    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.check_rate_limit("gemini", "u1")

    assert 0 < exc_info.value.retry_after <= 20
