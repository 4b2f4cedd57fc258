"""Tests for the per-tier monthly quota limiter."""

from __future__ import annotations

import datetime as dt
import math
import threading

import pytest

from matchgate.core.services.ai.errors import MalformedRequestError
from matchgate.core.services.ai.rate_limiter import (
    UNLIMITED,
    QuotaRateLimiter,
    next_month_start,
    parse_tier_limits,
)
from matchgate.core.storage.counter_store import RedisCounterStore


class _Clock:
    def __init__(self, start: dt.datetime) -> None:
        self.now = start

    def utc_now(self) -> dt.datetime:
        return self.now


class _FakePipeline:
    def __init__(self, client: "_FakeRedis") -> None:
        self._client = client
        self._ops = []

    def incr(self, key):
        self._ops.append(("incr", key))
        return self

    def expireat(self, key, when):
        self._ops.append(("expireat", key, when))
        return self

    def execute(self):
        results = []
        for op in self._ops:
            if op[0] == "incr":
                results.append(self._client.incr(op[1]))
            else:
                self._client.expiries[op[1]] = op[2]
                results.append(True)
        return results


class _FakeRedis:
    def __init__(self) -> None:
        self.values = {}
        self.expiries = {}

    def pipeline(self):
        return _FakePipeline(self)

    def incr(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def decr(self, key):
        self.values[key] = self.values.get(key, 0) - 1
        return self.values[key]

    def get(self, key):
        value = self.values.get(key)
        return None if value is None else str(value).encode("utf-8")


MAY_10 = dt.datetime(2024, 5, 10, 12, 0, tzinfo=dt.timezone.utc)


def _limiter(clock: _Clock, **kwargs) -> QuotaRateLimiter:
    return QuotaRateLimiter(
        parse_tier_limits("free=2,pro=inf,team=inf"),
        upgrade_url="/pricing",
        now_fn=clock.utc_now,
        **kwargs,
    )


def test_free_tier_allows_two_then_denies_until_next_month() -> None:
    limiter = _limiter(_Clock(MAY_10))

    first = limiter.check_and_consume("org-1", "free")
    second = limiter.check_and_consume("org-1", "free")
    third = limiter.check_and_consume("org-1", "free")

    assert first.allowed and second.allowed
    assert not third.allowed
    assert third.remaining == 0
    assert third.reset_at == dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc)


def test_remaining_never_increases_within_period() -> None:
    limiter = QuotaRateLimiter({"starter": 5}, now_fn=_Clock(MAY_10).utc_now)

    remaining = [limiter.check_and_consume("org-1", "starter").remaining for _ in range(7)]

    assert remaining == [4, 3, 2, 1, 0, 0, 0]


def test_unlimited_tier_always_allows() -> None:
    limiter = _limiter(_Clock(MAY_10))

    for _ in range(50):
        decision = limiter.check_and_consume("org-1", "pro")
        assert decision.allowed
        assert math.isinf(decision.remaining)
    assert decision.used == 50
    assert decision.to_dict()["remaining"] is None


def test_quota_resets_at_period_boundary() -> None:
    clock = _Clock(MAY_10)
    limiter = _limiter(clock)
    limiter.check_and_consume("org-1", "free")
    limiter.check_and_consume("org-1", "free")
    assert not limiter.check_and_consume("org-1", "free").allowed

    clock.now = dt.datetime(2024, 6, 1, 0, 0, tzinfo=dt.timezone.utc)

    decision = limiter.check_and_consume("org-1", "free")
    assert decision.allowed
    assert decision.remaining == 1
    assert limiter.peek("org-1", "free").period == "2024-06"


def test_callers_have_separate_counters() -> None:
    limiter = _limiter(_Clock(MAY_10))
    limiter.check_and_consume("org-1", "free")
    limiter.check_and_consume("org-1", "free")

    assert limiter.check_and_consume("org-2", "free").allowed


def test_concurrent_consumption_never_exceeds_limit() -> None:
    limiter = QuotaRateLimiter({"free": 10}, now_fn=_Clock(MAY_10).utc_now)
    allowed = []
    lock = threading.Lock()

    def _worker() -> None:
        decision = limiter.check_and_consume("org-1", "free")
        with lock:
            allowed.append(decision.allowed)

    threads = [threading.Thread(target=_worker) for _ in range(40)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert allowed.count(True) == 10
    assert limiter.peek("org-1", "free").used == 10


def test_unknown_tier_is_malformed() -> None:
    limiter = _limiter(_Clock(MAY_10))

    with pytest.raises(MalformedRequestError):
        limiter.check_and_consume("org-1", "enterprise")


def test_denial_error_carries_upgrade_hint() -> None:
    limiter = _limiter(_Clock(MAY_10))
    limiter.check_and_consume("org-1", "free")
    limiter.check_and_consume("org-1", "free")
    error = limiter.denial_error(limiter.check_and_consume("org-1", "free"))

    payload = error.to_dict()
    assert error.upgrade_required is True
    assert payload["limit"] == 2
    assert payload["remaining"] == 0
    assert payload["upgrade_url"] == "/pricing"
    assert payload["reset_at"] == "2024-06-01T00:00:00+00:00"


def test_parse_tier_limits() -> None:
    assert parse_tier_limits("free=2, pro=unlimited,team=-1") == {"free": 2, "pro": UNLIMITED, "team": UNLIMITED}
    with pytest.raises(ValueError):
        parse_tier_limits("free")


def test_next_month_start_rolls_year() -> None:
    december = dt.datetime(2024, 12, 31, 23, 59, tzinfo=dt.timezone.utc)

    assert next_month_start(december) == dt.datetime(2025, 1, 1, tzinfo=dt.timezone.utc)


def test_redis_counter_store_rolls_back_overshoot() -> None:
    fake = _FakeRedis()
    limiter = _limiter(_Clock(MAY_10), store=RedisCounterStore(client=fake))

    results = [limiter.check_and_consume("org-1", "free") for _ in range(3)]

    assert [r.allowed for r in results] == [True, True, False]
    assert results[2].used == 2
    assert fake.values["ai:quota:org-1:2024-05"] == 2
    assert fake.expiries["ai:quota:org-1:2024-05"] == int(dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc).timestamp())
    assert limiter.peek("org-1", "free").used == 2
