"""Tests for the cache key-value backends."""

import pytest

from matchgate.core.services.ai.response_cache import ResponseCache
from matchgate.core.storage.kv_store import InMemoryKeyValueStore, RedisKeyValueStore


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def monotonic(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class _FakeRedis:
    def __init__(self) -> None:
        self.values = {}
        self.ttls = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex

    def delete(self, key):
        self.values.pop(key, None)


def test_in_memory_store_expires_entries() -> None:
    clock = _Clock()
    store = InMemoryKeyValueStore(time_fn=clock.monotonic)

    store.set("k", b"v", 10)
    clock.advance(9.5)
    assert store.get("k") == b"v"
    assert len(store) == 1

    clock.advance(0.5)
    assert store.get("k") is None
    assert len(store) == 0


def test_in_memory_store_delete() -> None:
    store = InMemoryKeyValueStore()
    store.set("k", b"v", 10)
    store.delete("k")
    store.delete("missing")

    assert store.get("k") is None


def test_redis_store_passes_ttl_and_normalizes_values() -> None:
    fake = _FakeRedis()
    store = RedisKeyValueStore(client=fake)

    store.set("ai:gateway:fp", b"payload", 3600)
    assert fake.ttls["ai:gateway:fp"] == 3600
    assert store.get("ai:gateway:fp") == b"payload"

    fake.values["text"] = "decoded"
    assert store.get("text") == b"decoded"
    assert store.get("missing") is None


def test_redis_store_requires_url_or_client() -> None:
    with pytest.raises(ValueError):
        RedisKeyValueStore()


def test_response_cache_on_redis_backend() -> None:
    fake = _FakeRedis()
    cache = ResponseCache(RedisKeyValueStore(client=fake), prefix="ai:gateway")

    cache.put("match_set:abc", {"content": "ranked list"}, 86400)

    assert "ai:gateway:match_set:abc" in fake.values
    assert fake.ttls["ai:gateway:match_set:abc"] == 86400
    assert cache.get("match_set:abc") == {"content": "ranked list"}


def test_in_memory_store_sweeps_expired_entries_on_set() -> None:
    clock = _Clock()
    store = InMemoryKeyValueStore(sweep_interval_seconds=30, time_fn=clock.monotonic)
    for idx in range(100):
        store.set(f"k{idx}", b"v", 10)
    assert store.raw_size() == 100

    clock.advance(60)
    store.set("fresh", b"v", 10)

    assert store.raw_size() == 1
    assert store.get("fresh") == b"v"


def test_in_memory_store_sweep_is_rate_limited() -> None:
    clock = _Clock()
    store = InMemoryKeyValueStore(sweep_interval_seconds=30, time_fn=clock.monotonic)
    store.set("a", b"v", 1)

    clock.advance(5)
    store.set("b", b"v", 10)

    assert store.raw_size() == 2
