import asyncio

import fakeredis
import pytest

from keyward.service.csrf import CsrfService
from keyward.storage.models import ConsumeOutcome
from keyward.storage.redis_cache import RedisCache


@pytest.fixture
def record_backed(store, settings, clock):
    return CsrfService(store, settings, now_fn=clock)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_backed(store, settings, clock, fake_redis):
    cache = RedisCache("redis://unused", client=fake_redis)
    return CsrfService(store, settings, cache=cache, now_fn=clock)


async def test_token_is_bound_to_session_and_single_use(record_backed):
    issued = await record_backed.generate("session-a")
    assert len(issued.token) == 64
    assert await record_backed.validate(issued.token, "session-b") is False
    assert await record_backed.validate(issued.token, "session-a") is True
    assert await record_backed.validate(issued.token, "session-a") is False


async def test_mismatched_session_does_not_burn_token(record_backed, store):
    issued = await record_backed.generate("session-a")
    await record_backed.validate(issued.token, "session-b")
    assert issued.token in store.csrf_tokens


async def test_expired_token_is_rejected(record_backed, clock):
    issued = await record_backed.generate("session-a")
    clock.advance(minutes=60)
    assert await record_backed.validate(issued.token, "session-a") is False


async def test_empty_inputs_are_rejected(record_backed):
    assert await record_backed.validate("", "session-a") is False
    assert await record_backed.validate("token", "") is False
    assert await record_backed.validate("never-issued", "session-a") is False


async def test_purge_expired_record_tokens(record_backed, store, clock):
    await record_backed.generate("session-a")
    clock.advance(minutes=30)
    live = await record_backed.generate("session-a")
    clock.advance(minutes=31)
    assert record_backed.purge_expired() == 1
    assert list(store.csrf_tokens) == [live.token]


async def test_redis_backend_scenario(redis_backed, fake_redis, store):
    issued = await redis_backed.generate("session-a")
    key = f"security:csrf:{issued.token}"
    assert await fake_redis.hget(key, "session_id") == "session-a"
    assert 3590 <= await fake_redis.ttl(key) <= 3600
    assert store.csrf_tokens == {}

    assert await redis_backed.validate(issued.token, "session-b") is False
    assert await fake_redis.exists(key) == 1
    assert await redis_backed.validate(issued.token, "session-a") is True
    assert await fake_redis.exists(key) == 0
    assert await redis_backed.validate(issued.token, "session-a") is False


async def test_redis_backend_expiry(redis_backed, fake_redis, clock):
    issued = await redis_backed.generate("session-a")
    clock.advance(minutes=61)
    assert await redis_backed.validate(issued.token, "session-a") is False
    assert await fake_redis.exists(f"security:csrf:{issued.token}") == 1


async def test_redis_consume_script_outcomes(fake_redis, clock):
    cache = RedisCache("redis://unused", client=fake_redis)
    now = clock()
    await fake_redis.hset(
        "security:csrf:tok",
        mapping={"session_id": "s1", "expires_at": str(now.timestamp() + 60)},
    )

    assert await cache.consume_csrf_token("missing", "s1", now) == ConsumeOutcome.NOT_FOUND
    assert await cache.consume_csrf_token("tok", "s2", now) == ConsumeOutcome.SESSION_MISMATCH
    later = clock.advance(minutes=2)
    assert await cache.consume_csrf_token("tok", "s1", later) == ConsumeOutcome.EXPIRED
    assert await cache.consume_csrf_token("tok", "s1", now) == ConsumeOutcome.CONSUMED
    assert await cache.consume_csrf_token("tok", "s1", now) == ConsumeOutcome.NOT_FOUND
    await cache.close()


async def test_concurrent_redis_validation_consumes_once(redis_backed):
    issued = await redis_backed.generate("session-a")
    results = await asyncio.gather(
        *(redis_backed.validate(issued.token, "session-a") for _ in range(8))
    )
    assert results.count(True) == 1


def test_ttl_is_clamped_to_one_second(clock):
    assert RedisCache._ttl_seconds(clock(), clock()) == 1
    assert RedisCache._ttl_seconds(clock().replace(tzinfo=None), clock()) == 1
