"""Sliding-window requests-per-minute guard for outbound provider calls.

Unlike the tier quota this never waits: a call that does not fit in the
current window is refused and the gateway serves fallback content.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Protocol

import redis

logger = logging.getLogger(__name__)


class ProviderRateLimiter(Protocol):
    rpm: int

    def try_acquire(self, endpoint: str) -> bool: ...

    def window_usage(self, endpoint: str) -> int: ...


class SlidingWindowRateLimiter:
    """In-process limiter with one event deque per endpoint."""

    def __init__(
        self,
        rpm: int,
        *,
        window_seconds: float = 60.0,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rpm = max(1, int(rpm))
        self._window_seconds = max(1.0, float(window_seconds))
        self._time_fn = time_fn
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.RLock()

    def _trim(self, endpoint: str, now: float) -> Deque[float]:
        events = self._events.setdefault(endpoint, deque())
        cutoff = now - self._window_seconds
        while events and events[0] <= cutoff:
            events.popleft()
        return events

    def try_acquire(self, endpoint: str) -> bool:
        with self._lock:
            now = self._time_fn()
            events = self._trim(endpoint, now)
            if len(events) >= self.rpm:
                return False
            events.append(now)
            return True

    def window_usage(self, endpoint: str) -> int:
        with self._lock:
            return len(self._trim(endpoint, self._time_fn()))


class RedisSlidingWindowRateLimiter:
    """Window shared by every gateway instance, kept in a Redis sorted set.

    The call is added before counting; an add that overshoots the limit is
    removed again, so the window never holds more than ``rpm`` admitted calls.
    """

    def __init__(
        self,
        rpm: int,
        url: str = "",
        *,
        client: Optional[Any] = None,
        key_prefix: str = "ai:ratelimit:minute",
        window_seconds: float = 60.0,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        if client is None and not url:
            raise ValueError("RedisSlidingWindowRateLimiter needs a URL or a client")
        self.rpm = max(1, int(rpm))
        self._client = client if client is not None else redis.Redis.from_url(url)
        self._key_prefix = key_prefix
        self._window_seconds = max(1.0, float(window_seconds))
        self._time_fn = time_fn

    def _key(self, endpoint: str) -> str:
        return f"{self._key_prefix}:{endpoint}"

    def try_acquire(self, endpoint: str) -> bool:
        key = self._key(endpoint)
        now = self._time_fn()
        member = f"{now:.6f}-{uuid.uuid4().hex}"
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(key, "-inf", now - self._window_seconds)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.expire(key, int(math.ceil(self._window_seconds)))
        count = int(pipe.execute()[2])
        if count > self.rpm:
            self._client.zrem(key, member)
            logger.info("provider rpm limit reached endpoint=%s rpm=%d", endpoint, self.rpm)
            return False
        return True

    def window_usage(self, endpoint: str) -> int:
        key = self._key(endpoint)
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(key, "-inf", self._time_fn() - self._window_seconds)
        pipe.zcard(key)
        return int(pipe.execute()[1])
