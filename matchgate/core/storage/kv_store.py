from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local TTL store. Good for a single instance and for tests.

    Expired items are dropped when read and swept on ``set`` at most once
    per ``sweep_interval_seconds``.
    """

    def __init__(
        self,
        *,
        sweep_interval_seconds: float = 60.0,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._time_fn = time_fn
        self._sweep_interval_seconds = max(0.0, float(sweep_interval_seconds))
        self._next_sweep = 0.0
        self._lock = threading.RLock()
        self._items: Dict[str, Tuple[bytes, float]] = {}

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._items.items() if now >= expires_at]
        for key in expired:
            del self._items[key]
        self._next_sweep = now + self._sweep_interval_seconds

    def get(self, key: str) -> Optional[bytes]:
        now = self._time_fn()
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if now >= expires_at:
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        now = self._time_fn()
        expires_at = now + max(1, int(ttl_seconds))
        with self._lock:
            if now >= self._next_sweep:
                self._purge_expired(now)
            self._items[key] = (bytes(value), expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def __len__(self) -> int:
        now = self._time_fn()
        with self._lock:
            self._purge_expired(now)
            return len(self._items)

    def raw_size(self) -> int:
        """Number of stored items, expired ones included."""
        with self._lock:
            return len(self._items)


class RedisKeyValueStore:
    """Redis-backed store shared by every gateway instance."""

    def __init__(self, url: str = "", *, client: Optional[Any] = None) -> None:
        if client is None and not url:
            raise ValueError("RedisKeyValueStore needs a URL or a client")
        self._client = client if client is not None else redis.Redis.from_url(url)
        if client is None:
            logger.info("Redis cache client created for %s", url.split("@")[-1])

    @property
    def client(self) -> Any:
        return self._client

    def get(self, key: str) -> Optional[bytes]:
        value = self._client.get(key)
        if value is None:
            return None
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._client.set(key, value, ex=max(1, int(ttl_seconds)))

    def delete(self, key: str) -> None:
        self._client.delete(key)
