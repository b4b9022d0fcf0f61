from __future__ import annotations

from threading import Lock

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from orgscope.core.config import Settings, get_settings
from orgscope.core.database import SessionLocal
from orgscope.hierarchy.dependencies import DependencyInspector
from orgscope.hierarchy.service import HierarchyService
from orgscope.hierarchy.tree import DbOrgUnitSource, OrgTreeIndex
from orgscope.platform.cache.scoped import ScopedCache, TtlPolicy
from orgscope.platform.cache.store import InMemoryTaggedCacheStore, RedisTaggedCacheStore, TaggedCacheStore
from orgscope.platform.security.context import UserContext
from orgscope.platform.security.permissions import PermissionEvaluator
from orgscope.platform.security.provider import ContextProvider


def build_cache_store(settings: Settings) -> TaggedCacheStore:
    if settings.cache_backend.lower() == "redis":
        return RedisTaggedCacheStore.from_url(settings.redis_url, tag_ttl=settings.cache_popularity_ttl_seconds)
    return InMemoryTaggedCacheStore()


def build_hierarchy_service(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    store: TaggedCacheStore | None = None,
) -> HierarchyService:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    store = store or build_cache_store(settings)

    tree = OrgTreeIndex(DbOrgUnitSource(session_factory))
    provider = ContextProvider(store, session_factory=session_factory, tree=tree, ttl=settings.context_ttl_seconds)
    return HierarchyService(
        tree=tree,
        provider=provider,
        cache=ScopedCache(store, ttl_policy=TtlPolicy.from_settings(settings)),
        permissions=PermissionEvaluator(tree, DependencyInspector(session_factory)),
    )


_HIERARCHY_SERVICE: HierarchyService | None = None
_SERVICE_LOCK = Lock()


def get_hierarchy_service() -> HierarchyService:
    global _HIERARCHY_SERVICE
    with _SERVICE_LOCK:
        if _HIERARCHY_SERVICE is None:
            _HIERARCHY_SERVICE = build_hierarchy_service()
        return _HIERARCHY_SERVICE


def set_hierarchy_service(service: HierarchyService | None) -> None:
    global _HIERARCHY_SERVICE
    with _SERVICE_LOCK:
        _HIERARCHY_SERVICE = service


def get_current_user_id(request: Request) -> str:
    """Identity is established upstream and forwarded in ``X-User-Id``."""

    user_id = getattr(request.state, "user_id", None) or request.headers.get("x-user-id")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing user identity")
    return str(user_id)


def require_user_context(
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> UserContext:
    return service.provider.get_context(user_id)
