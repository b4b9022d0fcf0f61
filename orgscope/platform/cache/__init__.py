from orgscope.platform.cache.scoped import ScopedCache, TtlPolicy, build_cache_key
from orgscope.platform.cache.store import InMemoryTaggedCacheStore, RedisTaggedCacheStore, TaggedCacheStore
from orgscope.platform.cache.tags import (
    TagSubject,
    organization_write_tags,
    resource_tags,
    scope_read_tags,
    task_write_tags,
    unit_write_tags,
    user_write_tags,
)

__all__ = [
    "InMemoryTaggedCacheStore",
    "RedisTaggedCacheStore",
    "ScopedCache",
    "TagSubject",
    "TaggedCacheStore",
    "TtlPolicy",
    "build_cache_key",
    "organization_write_tags",
    "resource_tags",
    "scope_read_tags",
    "task_write_tags",
    "unit_write_tags",
    "user_write_tags",
]
