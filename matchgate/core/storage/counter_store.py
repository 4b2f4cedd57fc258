from __future__ import annotations

import datetime as dt
import math
import threading
from typing import Any, Dict, Optional, Protocol, Tuple

import redis


class CounterStore(Protocol):
    def consume(self, key: str, *, limit: float, reset_at: dt.datetime, now: dt.datetime) -> Tuple[bool, int]:
        """Atomically add one use if ``used < limit``; return (allowed, used)."""
        ...

    def peek(self, key: str, *, now: dt.datetime) -> int: ...


class InMemoryCounterStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, dt.datetime]] = {}

    def _prune(self, now: dt.datetime) -> None:
        expired = [key for key, (_, reset_at) in self._counters.items() if now >= reset_at]
        for key in expired:
            del self._counters[key]

    def consume(self, key: str, *, limit: float, reset_at: dt.datetime, now: dt.datetime) -> Tuple[bool, int]:
        with self._lock:
            self._prune(now)
            used, _ = self._counters.get(key, (0, reset_at))
            if used >= limit:
                return False, used
            used += 1
            self._counters[key] = (used, reset_at)
            return True, used

    def peek(self, key: str, *, now: dt.datetime) -> int:
        with self._lock:
            self._prune(now)
            return self._counters.get(key, (0, now))[0]


class RedisCounterStore:
    """Counters shared across instances; INCR is rolled back on overshoot."""

    def __init__(self, url: str = "", *, client: Optional[Any] = None) -> None:
        if client is None and not url:
            raise ValueError("RedisCounterStore needs a URL or a client")
        self._client = client if client is not None else redis.Redis.from_url(url)

    def consume(self, key: str, *, limit: float, reset_at: dt.datetime, now: dt.datetime) -> Tuple[bool, int]:
        pipe = self._client.pipeline()
        pipe.incr(key)
        pipe.expireat(key, int(reset_at.timestamp()))
        used = int(pipe.execute()[0])
        if not math.isinf(limit) and used > limit:
            self._client.decr(key)
            return False, int(min(used - 1, limit))
        return True, used

    def peek(self, key: str, *, now: dt.datetime) -> int:
        value = self._client.get(key)
        return int(value) if value is not None else 0
