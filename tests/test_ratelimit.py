"""Tests for fixed-window rate limiting."""

import asyncio

from relaystack.core.models import EventTypeDefinition, RateLimitPolicy
from relaystack.core.ratelimit import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


POLICY = RateLimitPolicy(window=60, max_requests=2, key_fields=["user_id"])


def test_key_includes_payload_fields():
    definition = EventTypeDefinition(name="user.login", rate_limit=POLICY)

    assert RateLimiter.build_key(definition, {"user_id": "u1"}) == "user.login:u1"
    assert RateLimiter.build_key(definition, {}) == "user.login:"


def test_key_without_fields_is_event_type():
    policy = RateLimitPolicy(window=60, max_requests=2, key_fields=[])
    definition = EventTypeDefinition(name="user.login", rate_limit=policy)

    assert RateLimiter.build_key(definition, {"user_id": "u1"}) == "user.login"


async def test_window_admits_max_requests():
    limiter = RateLimiter(clock=FakeClock())

    assert await limiter.try_admit("k", POLICY)
    assert await limiter.try_admit("k", POLICY)
    assert not await limiter.try_admit("k", POLICY)


async def test_window_resets_after_elapsing():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    for _ in range(2):
        await limiter.try_admit("k", POLICY)

    clock.now += 59
    assert not await limiter.try_admit("k", POLICY)
    clock.now += 1
    assert await limiter.try_admit("k", POLICY)


async def test_keys_are_independent():
    limiter = RateLimiter(clock=FakeClock())
    for _ in range(2):
        await limiter.try_admit("user.login:u1", POLICY)

    assert not await limiter.try_admit("user.login:u1", POLICY)
    assert await limiter.try_admit("user.login:u2", POLICY)


async def test_reset_and_prune():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    await limiter.try_admit("a", POLICY)
    await limiter.try_admit("b", POLICY)

    await limiter.reset("a")
    assert len(limiter) == 1

    clock.now += 120
    assert await limiter.prune() == 1
    assert len(limiter) == 0


async def test_concurrent_admissions_respect_the_limit():
    limiter = RateLimiter(clock=FakeClock())
    policy = RateLimitPolicy(window=60, max_requests=25, key_fields=[])

    admitted = await asyncio.gather(*(limiter.try_admit("burst", policy) for _ in range(100)))

    assert admitted.count(True) == 25
    assert not await limiter.try_admit("burst", policy)
