from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from threading import Lock
from typing import Any, Protocol

import redis


class TaggedCacheStore(Protocol):
    """Key-value store with TTLs and tag-grouped invalidation.

    Per-key operations are atomic, and so is taking the members of a tag
    while dropping it. Nothing else spans keys transactionally.
    """

    def get(self, key: str) -> tuple[Any, bool]:
        ...

    def put(self, key: str, value: Any, *, tags: Iterable[str] = (), ttl: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def increment(self, key: str, *, ttl: int) -> int:
        ...

    def read_counter(self, key: str) -> int:
        ...

    def flush_tags(self, tags: Iterable[str]) -> int:
        ...


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float
    tags: frozenset[str]


class InMemoryTaggedCacheStore:
    """Process-local store; ``clock`` is injectable so expiry can be tested.

    Expired entries are dropped when read, and writes sweep the whole map at
    most once every ``sweep_interval`` seconds.
    """

    def __init__(self, clock: Callable[[], float] | None = None, *, sweep_interval: float = 60.0) -> None:
        self._clock = clock or time.monotonic
        self._entries: dict[str, _Entry] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._lock = Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep_at = self._clock() + sweep_interval

    def get(self, key: str) -> tuple[Any, bool]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None, False
            return entry.value, True

    def put(self, key: str, value: Any, *, tags: Iterable[str] = (), ttl: int) -> None:
        tag_set = frozenset(tags)
        with self._lock:
            self._maybe_sweep()
            self._drop(key)
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl, tags=tag_set)
            for tag in tag_set:
                self._tag_index.setdefault(tag, set()).add(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._drop(key)

    def increment(self, key: str, *, ttl: int) -> int:
        with self._lock:
            self._maybe_sweep()
            entry = self._live_entry(key)
            current = int(entry.value) if entry is not None else 0
            self._entries[key] = _Entry(value=current + 1, expires_at=self._clock() + ttl, tags=frozenset())
            return current + 1

    def read_counter(self, key: str) -> int:
        value, found = self.get(key)
        return int(value) if found else 0

    def flush_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for tag in set(tags):
                for key in self._tag_index.pop(tag, set()):
                    if key in self._entries:
                        self._drop(key)
                        removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()

    def purge_expired(self) -> int:
        with self._lock:
            return self._sweep()

    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def tag_count(self) -> int:
        with self._lock:
            return len(self._tag_index)

    def _maybe_sweep(self) -> None:
        if self._clock() >= self._next_sweep_at:
            self._sweep()

    def _sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._drop(key)
        self._next_sweep_at = now + self._sweep_interval
        return len(expired)

    def _live_entry(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._drop(key)
            return None
        return entry

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]


class RedisTaggedCacheStore:
    """Redis-backed store; values are JSON documents, tags are Redis sets of keys."""

    TAG_PREFIX = "orgscope:tag:"
    KEY_PREFIX = "orgscope:cache:"

    def __init__(self, client: redis.Redis, *, tag_ttl: int = 86400) -> None:
        self._client = client
        self._tag_ttl = tag_ttl

    @classmethod
    def from_url(cls, url: str, *, tag_ttl: int = 86400) -> RedisTaggedCacheStore:
        return cls(redis.Redis.from_url(url, decode_responses=True), tag_ttl=tag_ttl)

    def get(self, key: str) -> tuple[Any, bool]:
        raw = self._client.get(self._key(key))
        if raw is None:
            return None, False
        return json.loads(raw), True

    def put(self, key: str, value: Any, *, tags: Iterable[str] = (), ttl: int) -> None:
        storage_key = self._key(key)
        pipe = self._client.pipeline()
        pipe.set(storage_key, json.dumps(value, default=str), ex=ttl)
        for tag in set(tags):
            tag_key = self._tag(tag)
            pipe.sadd(tag_key, storage_key)
            pipe.expire(tag_key, max(ttl, self._tag_ttl))
        pipe.execute()

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def increment(self, key: str, *, ttl: int) -> int:
        storage_key = self._key(key)
        pipe = self._client.pipeline()
        pipe.incr(storage_key)
        pipe.expire(storage_key, ttl)
        count, _ = pipe.execute()
        return int(count)

    def read_counter(self, key: str) -> int:
        raw = self._client.get(self._key(key))
        return int(raw) if raw is not None else 0

    def flush_tags(self, tags: Iterable[str]) -> int:
        tag_keys = [self._tag(tag) for tag in set(tags)]
        if not tag_keys:
            return 0
        # Members are read and the tag sets dropped in one MULTI, so a
        # concurrent put lands in a fresh tag set instead of a deleted one.
        pipe = self._client.pipeline()
        for tag_key in tag_keys:
            pipe.smembers(tag_key)
        pipe.delete(*tag_keys)
        *member_sets, _ = pipe.execute()
        members = set().union(*member_sets)
        if not members:
            return 0
        return int(self._client.delete(*members))

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    def _tag(self, tag: str) -> str:
        return f"{self.TAG_PREFIX}{tag}"
