"""Tests for the outbound requests-per-minute guard."""

from __future__ import annotations

import threading

import pytest

from matchgate.core.services.ai.provider_rate_limiter import (
    RedisSlidingWindowRateLimiter,
    SlidingWindowRateLimiter,
)

ENDPOINT = "anthropic:messages"


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class _FakePipeline:
    def __init__(self, client: "_FakeRedis") -> None:
        self._client = client
        self._ops = []

    def zremrangebyscore(self, key, low, high):
        self._ops.append(lambda: self._client.zremrangebyscore(key, low, high))
        return self

    def zadd(self, key, mapping):
        self._ops.append(lambda: self._client.zadd(key, mapping))
        return self

    def zcard(self, key):
        self._ops.append(lambda: self._client.zcard(key))
        return self

    def expire(self, key, seconds):
        self._ops.append(lambda: self._client.expire(key, seconds))
        return self

    def execute(self):
        return [op() for op in self._ops]


class _FakeRedis:
    def __init__(self) -> None:
        self.sets = {}
        self.expiries = {}

    def pipeline(self):
        return _FakePipeline(self)

    def zremrangebyscore(self, key, low, high):
        members = self.sets.get(key, {})
        stale = [member for member, score in members.items() if score <= float(high)]
        for member in stale:
            del members[member]
        return len(stale)

    def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zcard(self, key):
        return len(self.sets.get(key, {}))

    def zrem(self, key, member):
        return 1 if self.sets.get(key, {}).pop(member, None) is not None else 0

    def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True


def test_refuses_calls_beyond_rpm_until_window_slides() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(3, time_fn=clock.time)

    assert [limiter.try_acquire(ENDPOINT) for _ in range(4)] == [True, True, True, False]
    assert limiter.window_usage(ENDPOINT) == 3

    clock.advance(59)
    assert limiter.try_acquire(ENDPOINT) is False

    clock.advance(1)
    assert limiter.try_acquire(ENDPOINT) is True
    assert limiter.window_usage(ENDPOINT) == 1


def test_endpoints_have_separate_windows() -> None:
    limiter = SlidingWindowRateLimiter(1, time_fn=_Clock().time)

    assert limiter.try_acquire(ENDPOINT)
    assert limiter.try_acquire("anthropic:batch")
    assert not limiter.try_acquire(ENDPOINT)


def test_concurrent_acquires_never_exceed_rpm() -> None:
    limiter = SlidingWindowRateLimiter(10, time_fn=_Clock().time)
    admitted = []
    lock = threading.Lock()

    def worker() -> None:
        ok = limiter.try_acquire(ENDPOINT)
        with lock:
            admitted.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert admitted.count(True) == 10


def test_redis_limiter_rolls_back_overshoot() -> None:
    clock = _Clock()
    fake = _FakeRedis()
    limiter = RedisSlidingWindowRateLimiter(2, client=fake, time_fn=clock.time)

    assert limiter.try_acquire(ENDPOINT)
    assert limiter.try_acquire(ENDPOINT)
    assert not limiter.try_acquire(ENDPOINT)

    key = "ai:ratelimit:minute:anthropic:messages"
    assert fake.zcard(key) == 2
    assert fake.expiries[key] == 60
    assert limiter.window_usage(ENDPOINT) == 2

    clock.advance(61)
    assert limiter.window_usage(ENDPOINT) == 0
    assert limiter.try_acquire(ENDPOINT)


def test_redis_limiter_requires_url_or_client() -> None:
    with pytest.raises(ValueError):
        RedisSlidingWindowRateLimiter(10)
