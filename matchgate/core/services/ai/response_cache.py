"""Fingerprint-keyed response cache with per-entry TTL.

Values are wrapped in a small JSON envelope carrying the schema version and
the creation/expiry times. Backend failures fail open: a read error is a
miss and a write error is logged and skipped.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from matchgate.core.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

_HIT_COUNT_SWEEP_SECONDS = 60.0


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float
    hit_count: int = 0


class ResponseCache:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        prefix: str = "ai:gateway",
        schema_version: str = "2.0",
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._prefix = str(prefix or "").rstrip(":")
        self._schema_version = str(schema_version)
        self._time_fn = time_fn
        self._lock = threading.RLock()
        # key -> (hit count, expires at); swept once expired
        self._hit_counts: Dict[str, Tuple[int, float]] = {}
        self._next_sweep = 0.0
        self._stats: Dict[str, int] = {"hits": 0, "misses": 0, "errors": 0}

    def _key(self, fingerprint: str) -> str:
        return f"{self._prefix}:{fingerprint}" if self._prefix else str(fingerprint)

    def _bump(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1

    def _sweep_hit_counts(self, now: float) -> None:
        with self._lock:
            if now < self._next_sweep:
                return
            expired = [key for key, (_, expires_at) in self._hit_counts.items() if expires_at <= now]
            for key in expired:
                del self._hit_counts[key]
            self._next_sweep = now + _HIT_COUNT_SWEEP_SECONDS

    def _forget(self, key: str) -> None:
        with self._lock:
            self._hit_counts.pop(key, None)

    def _load(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self._store.get(key)
        except Exception:
            self._bump("errors")
            logger.warning("cache get failed for %s", key, exc_info=True)
            return None
        if raw is None:
            self._forget(key)
            return None

        try:
            envelope = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("cache entry %s is corrupted, dropping it", key)
            self._drop(key)
            return None

        if not isinstance(envelope, dict) or envelope.get("schemaVersion") != self._schema_version:
            logger.info(
                "cache schema mismatch for %s (cached=%s expected=%s), invalidating",
                key,
                envelope.get("schemaVersion") if isinstance(envelope, dict) else None,
                self._schema_version,
            )
            self._drop(key)
            return None

        try:
            envelope["createdAt"] = float(envelope.get("createdAt") or 0)
            envelope["expiresAt"] = float(envelope.get("expiresAt") or 0)
        except (TypeError, ValueError, OverflowError):
            logger.warning("cache entry %s has invalid timestamps, dropping it", key)
            self._drop(key)
            return None

        if envelope["expiresAt"] <= self._time_fn():
            self._drop(key)
            return None
        return envelope

    def _drop(self, key: str) -> None:
        self._forget(key)
        try:
            self._store.delete(key)
        except Exception:
            self._bump("errors")
            logger.warning("cache delete failed for %s", key, exc_info=True)

    def get(self, fingerprint: str) -> Optional[Any]:
        """Return the cached value for ``fingerprint`` or None."""
        key = self._key(fingerprint)
        self._sweep_hit_counts(self._time_fn())
        envelope = self._load(key)
        if envelope is None:
            self._bump("misses")
            logger.debug("cache MISS %s", key)
            return None

        with self._lock:
            self._stats["hits"] += 1
            hits, _ = self._hit_counts.get(key, (0, 0.0))
            self._hit_counts[key] = (hits + 1, envelope["expiresAt"])
        logger.debug("cache HIT %s", key)
        return envelope.get("data")

    def put(self, fingerprint: str, value: Any, ttl: int) -> None:
        ttl_seconds = int(ttl)
        if ttl_seconds <= 0:
            raise ValueError(f"cache ttl must be positive, got {ttl!r}")

        key = self._key(fingerprint)
        now = self._time_fn()
        envelope = {
            "schemaVersion": self._schema_version,
            "data": value,
            "createdAt": now,
            "expiresAt": now + ttl_seconds,
        }
        payload = json.dumps(envelope, ensure_ascii=False, default=str).encode("utf-8")
        try:
            self._store.set(key, payload, ttl_seconds)
        except Exception:
            self._bump("errors")
            logger.warning("cache set failed for %s", key, exc_info=True)
            return
        with self._lock:
            self._hit_counts[key] = (0, now + ttl_seconds)
        self._sweep_hit_counts(now)
        logger.debug("cache SET %s (ttl=%ss)", key, ttl_seconds)

    def invalidate(self, fingerprint: str) -> None:
        self._drop(self._key(fingerprint))

    def entry(self, fingerprint: str) -> Optional[CacheEntry]:
        """Inspect an entry without counting a hit."""
        key = self._key(fingerprint)
        envelope = self._load(key)
        if envelope is None:
            return None
        with self._lock:
            hits, _ = self._hit_counts.get(key, (0, 0.0))
        return CacheEntry(
            key=key,
            value=envelope.get("data"),
            created_at=envelope["createdAt"],
            expires_at=envelope["expiresAt"],
            hit_count=hits,
        )

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hit_counts)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            payload: Dict[str, Any] = dict(self._stats)
        lookups = payload["hits"] + payload["misses"]
        payload["hit_rate"] = round(payload["hits"] / lookups, 4) if lookups else 0.0
        return payload

    def reset_stats(self) -> None:
        with self._lock:
            for name in self._stats:
                self._stats[name] = 0
