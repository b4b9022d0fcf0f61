from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from orgscope.platform.cache.scoped import ScopedCache
from orgscope.platform.cache.store import RedisTaggedCacheStore


class _FakePipeline:
    def __init__(self, client: _FakeRedis) -> None:
        self._client = client
        self._calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def __getattr__(self, name: str) -> Any:
        def queue(*args: Any, **kwargs: Any) -> _FakePipeline:
            self._calls.append((name, args, kwargs))
            return self

        return queue

    def execute(self) -> list[Any]:
        results = [getattr(self._client, name)(*args, **kwargs) for name, args, kwargs in self._calls]
        self._calls.clear()
        return results


class _FakeRedis:
    """Dict-backed double covering the commands the store issues."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}

    def pipeline(self) -> _FakePipeline:
        return _FakePipeline(self)

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def incr(self, key: str) -> int:
        current = int(self.values.get(key, "0")) + 1
        self.values[key] = str(current)
        return current

    def expire(self, key: str, ttl: int) -> bool:
        self.ttls[key] = ttl
        return True

    def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


@pytest.fixture()
def fake_redis() -> _FakeRedis:
    return _FakeRedis()


@pytest.fixture()
def store(fake_redis: _FakeRedis) -> RedisTaggedCacheStore:
    return RedisTaggedCacheStore(fake_redis, tag_ttl=600)  # type: ignore[arg-type]


def test_values_are_stored_as_json_with_ttl(store: RedisTaggedCacheStore, fake_redis: _FakeRedis) -> None:
    store.put("users:list:GO:abc", {"items": ["u-1"], "total": 1}, tags=["users"], ttl=300)

    assert store.get("users:list:GO:abc") == ({"items": ["u-1"], "total": 1}, True)
    assert fake_redis.ttls["orgscope:cache:users:list:GO:abc"] == 300
    assert fake_redis.ttls["orgscope:tag:users"] == 600
    assert store.get("missing") == (None, False)


def test_tag_sets_outlive_their_longest_entry(store: RedisTaggedCacheStore, fake_redis: _FakeRedis) -> None:
    store.put("stores:list:GR:abc", ["s1"], tags=["stores"], ttl=3600)
    assert fake_redis.ttls["orgscope:tag:stores"] == 3600


def test_flush_tags_removes_members_and_the_tag_set(store: RedisTaggedCacheStore, fake_redis: _FakeRedis) -> None:
    store.put("a", 1, tags=["users", "organization:org-1"], ttl=60)
    store.put("b", 2, tags=["organization:org-1"], ttl=60)
    store.put("c", 3, tags=["stores"], ttl=60)

    assert store.flush_tags(["organization:org-1"]) == 2
    assert store.get("a")[1] is False
    assert store.get("b")[1] is False
    assert store.get("c") == (3, True)
    assert "orgscope:tag:organization:org-1" not in fake_redis.sets
    assert store.flush_tags(["unknown"]) == 0


def test_counters_increment_and_refresh_expiry(store: RedisTaggedCacheStore, fake_redis: _FakeRedis) -> None:
    assert store.read_counter("cache:popularity:k") == 0
    assert store.increment("cache:popularity:k", ttl=86400) == 1
    assert store.increment("cache:popularity:k", ttl=86400) == 2

    assert store.read_counter("cache:popularity:k") == 2
    assert fake_redis.ttls["orgscope:cache:cache:popularity:k"] == 86400


def test_scoped_cache_runs_on_the_redis_store(store: RedisTaggedCacheStore) -> None:
    cache = ScopedCache(store)
    cache.put("stores:list:GR:abc", ["s1"], ["stores", "unit:r1"], resource="stores")
    cache.get("stores:list:GR:abc", resource="stores")

    assert cache.popularity("stores:list:GR:abc") == 1
    assert cache.invalidate_tags(["unit:r1"]) == 1
    assert cache.get("stores:list:GR:abc", resource="stores") == (None, False)
    assert cache.popularity("stores:list:GR:abc") == 1


class _InterleavingRedis(_FakeRedis):
    """Runs ``concurrent`` once, right before cached values are deleted."""

    def __init__(self) -> None:
        super().__init__()
        self.concurrent: Callable[[], None] | None = None

    def delete(self, *keys: str) -> int:
        if self.concurrent is not None and all(key.startswith(RedisTaggedCacheStore.KEY_PREFIX) for key in keys):
            concurrent, self.concurrent = self.concurrent, None
            concurrent()
        return super().delete(*keys)


def test_put_racing_a_flush_stays_reachable_by_its_tag() -> None:
    client = _InterleavingRedis()
    store = RedisTaggedCacheStore(client, tag_ttl=600)  # type: ignore[arg-type]
    store.put("users:list:GO:old", ["u-1"], tags=["users"], ttl=60)
    client.concurrent = lambda: store.put("users:list:GO:new", ["u-2"], tags=["users"], ttl=60)

    assert store.flush_tags(["users"]) == 1
    assert store.get("users:list:GO:old")[1] is False
    assert store.get("users:list:GO:new") == (["u-2"], True)
    assert client.sets["orgscope:tag:users"] == {"orgscope:cache:users:list:GO:new"}

    assert store.flush_tags(["users"]) == 1
    assert store.get("users:list:GO:new")[1] is False
