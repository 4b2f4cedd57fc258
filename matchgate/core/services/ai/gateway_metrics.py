"""In-memory gateway telemetry for the admin read API.

Tracks per-day counters (cache hits/misses, fallbacks, quota denials,
quota backend errors, provider outcomes) that roll over at UTC midnight,
plus per-endpoint latency and recent errors.
"""

from __future__ import annotations

import collections
import datetime as dt
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional, Tuple

_WINDOW_15M_SECONDS = 15 * 60


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _day_key(now: dt.datetime) -> str:
    return now.astimezone(dt.timezone.utc).strftime("%Y-%m-%d")


@dataclass
class _DailyCounters:
    day: str
    cache_hits: int = 0
    cache_misses: int = 0
    provider_successes: int = 0
    provider_failures: int = 0
    quota_denials: int = 0
    quota_errors: int = 0
    fallbacks: Dict[str, int] = field(default_factory=dict)
    failures_by_kind: Dict[str, int] = field(default_factory=dict)


@dataclass
class _EndpointRuntime:
    errors_15m: Deque[Tuple[dt.datetime, str, str]] = field(default_factory=collections.deque)
    latency_ema_ms: Optional[float] = None
    last_error: str = ""

    def trim(self, now: dt.datetime) -> None:
        cutoff = now - dt.timedelta(seconds=_WINDOW_15M_SECONDS)
        while self.errors_15m and self.errors_15m[0][0] < cutoff:
            self.errors_15m.popleft()


class GatewayMetrics:
    def __init__(self, *, now_fn: Callable[[], dt.datetime] = _utc_now) -> None:
        self._now_fn = now_fn
        self._lock = threading.RLock()
        self._today = _DailyCounters(day=_day_key(now_fn()))
        self._endpoints: Dict[str, _EndpointRuntime] = {}

    def _counters(self, now: dt.datetime) -> _DailyCounters:
        key = _day_key(now)
        if self._today.day != key:
            self._today = _DailyCounters(day=key)
        return self._today

    def _endpoint(self, endpoint: str) -> _EndpointRuntime:
        return self._endpoints.setdefault(endpoint, _EndpointRuntime())

    def record_cache_hit(self) -> None:
        with self._lock:
            self._counters(self._now_fn()).cache_hits += 1

    def record_cache_miss(self) -> None:
        with self._lock:
            self._counters(self._now_fn()).cache_misses += 1

    def record_quota_denied(self) -> None:
        with self._lock:
            self._counters(self._now_fn()).quota_denials += 1

    def record_quota_error(self) -> None:
        with self._lock:
            self._counters(self._now_fn()).quota_errors += 1

    def record_fallback(self, reason: str) -> None:
        with self._lock:
            fallbacks = self._counters(self._now_fn()).fallbacks
            fallbacks[reason] = fallbacks.get(reason, 0) + 1

    def _update_latency(self, state: _EndpointRuntime, latency_ms: float, weight: float) -> None:
        if state.latency_ema_ms is None:
            state.latency_ema_ms = float(latency_ms)
        else:
            state.latency_ema_ms = ((1 - weight) * state.latency_ema_ms) + (weight * float(latency_ms))

    def record_success(self, endpoint: str, *, latency_ms: float) -> None:
        now = self._now_fn()
        with self._lock:
            self._counters(now).provider_successes += 1
            state = self._endpoint(endpoint)
            state.trim(now)
            self._update_latency(state, latency_ms, 0.3)

    def record_failure(self, endpoint: str, *, kind: str, message: str, latency_ms: Optional[float] = None) -> None:
        now = self._now_fn()
        with self._lock:
            counters = self._counters(now)
            counters.provider_failures += 1
            counters.failures_by_kind[kind] = counters.failures_by_kind.get(kind, 0) + 1
            state = self._endpoint(endpoint)
            state.trim(now)
            if latency_ms is not None:
                self._update_latency(state, latency_ms, 0.2)
            state.last_error = str(message or "").strip()[:240]
            state.errors_15m.append((now, state.last_error, kind))

    def cache_payload(self) -> Dict[str, Any]:
        with self._lock:
            counters = self._counters(self._now_fn())
            lookups = counters.cache_hits + counters.cache_misses
            return {
                "day": counters.day,
                "hits": counters.cache_hits,
                "misses": counters.cache_misses,
                "hit_rate": round(counters.cache_hits / lookups, 4) if lookups else 0.0,
            }

    def snapshot(self) -> Dict[str, Any]:
        now = self._now_fn()
        with self._lock:
            counters = self._counters(now)
            endpoints: Dict[str, Any] = {}
            for name, state in sorted(self._endpoints.items()):
                state.trim(now)
                endpoints[name] = {
                    "avg_latency_ms": int(round(state.latency_ema_ms or 0)),
                    "errors_last_15m": len(state.errors_15m),
                    "last_error": state.last_error or None,
                }
            return {
                "day": counters.day,
                "cache": self.cache_payload(),
                "provider": {
                    "successes": counters.provider_successes,
                    "failures": counters.provider_failures,
                    "failures_by_kind": dict(counters.failures_by_kind),
                },
                "fallbacks": dict(counters.fallbacks),
                "quota_denials": counters.quota_denials,
                "quota_errors": counters.quota_errors,
                "endpoints": endpoints,
            }
