"""Tests for in-memory gateway metrics."""

import datetime as dt

from matchgate.core.services.ai.gateway_metrics import GatewayMetrics


class _Clock:
    def __init__(self) -> None:
        self.now = dt.datetime(2024, 5, 10, 23, 50, tzinfo=dt.timezone.utc)

    def utc_now(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += dt.timedelta(**kwargs)


def test_cache_hit_rate_for_today() -> None:
    metrics = GatewayMetrics(now_fn=_Clock().utc_now)

    metrics.record_cache_hit()
    metrics.record_cache_hit()
    metrics.record_cache_hit()
    metrics.record_cache_miss()

    assert metrics.cache_payload() == {"day": "2024-05-10", "hits": 3, "misses": 1, "hit_rate": 0.75}


def test_counters_roll_over_at_utc_midnight() -> None:
    clock = _Clock()
    metrics = GatewayMetrics(now_fn=clock.utc_now)
    metrics.record_cache_hit()
    metrics.record_fallback("circuit_open")
    metrics.record_quota_denied()

    clock.advance(minutes=15)

    snap = metrics.snapshot()
    assert snap["day"] == "2024-05-11"
    assert snap["cache"]["hits"] == 0
    assert snap["fallbacks"] == {}
    assert snap["quota_denials"] == 0


def test_endpoint_latency_and_recent_errors() -> None:
    clock = _Clock()
    metrics = GatewayMetrics(now_fn=clock.utc_now)

    metrics.record_success("anthropic:messages", latency_ms=1000)
    metrics.record_failure("anthropic:messages", kind="timeout", message="Provider call exceeded 20s", latency_ms=2000)

    endpoint = metrics.snapshot()["endpoints"]["anthropic:messages"]
    assert endpoint["avg_latency_ms"] == 1200
    assert endpoint["errors_last_15m"] == 1
    assert endpoint["last_error"] == "Provider call exceeded 20s"

    clock.advance(minutes=16)
    assert metrics.snapshot()["endpoints"]["anthropic:messages"]["errors_last_15m"] == 0
