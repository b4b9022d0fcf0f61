"""Scope-keyed read cache with popularity-driven TTLs.

Each cached read is stored under a key derived from the caller's role and
scope (never the user id), so users sharing a scope share entries. A separate
popularity counter per key, kept for a day and untouched by tag flushes,
decides how long the next recomputation may live.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from orgscope.core.config import Settings
from orgscope.metrics import observe_cache_hit, observe_cache_miss, observe_invalidated_keys, observe_ttl_bucket
from orgscope.platform.cache.store import TaggedCacheStore
from orgscope.platform.security.scope import ResourceKind, ScopeFilter


logger = logging.getLogger("orgscope.cache")

T = TypeVar("T")

POPULARITY_PREFIX = "cache:popularity:"


def _default_long_by_resource() -> dict[str, int]:
    return {
        ResourceKind.STORES.value: 3600,
        ResourceKind.REGIONS.value: 3600,
        ResourceKind.ORGANIZATIONS.value: 3600,
    }


@dataclass(frozen=True, slots=True)
class TtlPolicy:
    short: int = 300
    medium: int = 900
    long: int = 1800
    long_by_resource: Mapping[str, int] = field(default_factory=_default_long_by_resource)
    medium_threshold: int = 5
    long_threshold: int = 20
    counter_ttl: int = 86400

    @classmethod
    def from_settings(cls, settings: Settings) -> TtlPolicy:
        long_stores = settings.cache_ttl_long_stores_seconds
        return cls(
            short=settings.cache_ttl_short_seconds,
            medium=settings.cache_ttl_medium_seconds,
            long=settings.cache_ttl_long_seconds,
            long_by_resource={
                ResourceKind.STORES.value: long_stores,
                ResourceKind.REGIONS.value: long_stores,
                ResourceKind.ORGANIZATIONS.value: long_stores,
            },
            medium_threshold=settings.cache_popularity_medium_threshold,
            long_threshold=settings.cache_popularity_long_threshold,
            counter_ttl=settings.cache_popularity_ttl_seconds,
        )

    def bucket_for(self, hit_count: int) -> str:
        if hit_count > self.long_threshold:
            return "long"
        if hit_count > self.medium_threshold:
            return "medium"
        return "short"

    def ttl_for(self, hit_count: int, resource: str | None = None) -> int:
        bucket = self.bucket_for(hit_count)
        if bucket == "long":
            return self.long_by_resource.get(resource or "", self.long)
        if bucket == "medium":
            return self.medium
        return self.short


class ScopedCache:
    def __init__(self, store: TaggedCacheStore, *, ttl_policy: TtlPolicy | None = None) -> None:
        self._store = store
        self._policy = ttl_policy or TtlPolicy()

    @property
    def store(self) -> TaggedCacheStore:
        return self._store

    @property
    def ttl_policy(self) -> TtlPolicy:
        return self._policy

    def get(self, key: str, *, resource: str | None = None) -> tuple[Any, bool]:
        value, found = self._store.get(key)
        if found:
            self._store.increment(popularity_key(key), ttl=self._policy.counter_ttl)
            observe_cache_hit(resource)
        else:
            observe_cache_miss(resource)
        return value, found

    def put(
        self,
        key: str,
        value: Any,
        tags: Iterable[str],
        ttl: int | None = None,
        *,
        resource: str | None = None,
    ) -> int:
        if ttl is None:
            ttl = self.select_ttl(key, resource=resource)
        self._store.put(key, value, tags=set(tags), ttl=ttl)
        return ttl

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        tag_list = sorted(set(tags))
        if not tag_list:
            return 0
        removed = self._store.flush_tags(tag_list)
        observe_invalidated_keys(removed)
        logger.info("cache.invalidated", extra={"tags": tag_list, "hit_count": removed})
        return removed

    def popularity(self, key: str) -> int:
        return self._store.read_counter(popularity_key(key))

    def select_ttl(self, key: str, *, resource: str | None = None) -> int:
        hit_count = self.popularity(key)
        bucket = self._policy.bucket_for(hit_count)
        ttl = self._policy.ttl_for(hit_count, resource)
        observe_ttl_bucket(resource, bucket)
        logger.debug("cache.ttl_selected", extra={"cache_key": key, "hit_count": hit_count, "ttl": ttl})
        return ttl

    def remember(
        self,
        key: str,
        tags: Iterable[str],
        compute: Callable[[], T],
        *,
        resource: str | None = None,
    ) -> T:
        value, found = self.get(key, resource=resource)
        if found:
            return value
        value = compute()
        self.put(key, value, tags, resource=resource)
        return value


def popularity_key(key: str) -> str:
    return f"{POPULARITY_PREFIX}{key}"


def normalize_filters(filters: Mapping[str, Any] | None) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for name in sorted(filters or {}):
        value = filters[name] if filters is not None else None
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            value = sorted(str(item) for item in value)
        normalized[name] = value
    return normalized


def build_cache_key(
    resource: str,
    *,
    role: str,
    scope: ScopeFilter,
    filters: Mapping[str, Any] | None = None,
    page: int = 1,
    per_page: int = 20,
    sort_by: str | None = None,
    sort_direction: str | None = None,
) -> str:
    material = {
        "scope": scope.as_key_dict(),
        "filters": normalize_filters(filters),
        "page": page,
        "per_page": per_page,
        "sort": [sort_by, sort_direction.lower() if sort_direction else None],
    }
    encoded = json.dumps(material, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:40]
    return f"{resource}:list:{role}:{digest}"
