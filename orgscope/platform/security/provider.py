from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from orgscope.core.database import SessionLocal
from orgscope.hierarchy.models import Department, Position, PositionDepartment, User
from orgscope.hierarchy.roles import OrgUnitType, Role, UserStatus
from orgscope.hierarchy.tree import DbOrgUnitSource, OrgTreeIndex
from orgscope.metrics import observe_context_cache_hit, observe_context_cache_miss
from orgscope.platform.cache.store import TaggedCacheStore
from orgscope.platform.security.context import UserContext
from orgscope.platform.security.errors import NoActivePositionError, NotFoundError, UserNotFoundError


logger = logging.getLogger("orgscope.context")


class ContextProvider:
    """Resolves and caches the organizational context of a user.

    Contexts live in the shared tagged store for ``ttl`` seconds. Every entry
    carries the common ``user-context`` tag and its own per-user tag, so a
    single user or every user can be dropped with one flush.
    """

    CACHE_TAG = "user-context"

    def __init__(
        self,
        store: TaggedCacheStore,
        *,
        session_factory: sessionmaker[Session] | None = None,
        tree: OrgTreeIndex | None = None,
        ttl: int = 3600,
    ) -> None:
        self._store = store
        self._session_factory = session_factory or SessionLocal
        self._tree = tree or OrgTreeIndex(DbOrgUnitSource(self._session_factory))
        self._ttl = ttl

    @classmethod
    def cache_key(cls, user_id: str) -> str:
        return f"{cls.CACHE_TAG}:{user_id}"

    def get_context(self, user_id: str) -> UserContext:
        key = self.cache_key(user_id)
        cached, found = self._store.get(key)
        if found:
            observe_context_cache_hit()
            return UserContext.from_dict(cached)

        observe_context_cache_miss()
        ctx = self._load_context(user_id)
        self._store.put(key, ctx.as_dict(), tags=(self.CACHE_TAG, key), ttl=self._ttl)
        return ctx

    def get_target_context(self, user_id: str) -> UserContext:
        """Context of a user being acted upon.

        Targets without an active position still have a role and a home
        organization on their user row, which is enough for permission checks.
        """

        try:
            return self.get_context(user_id)
        except NoActivePositionError:
            with self._session_factory() as session:
                user = self._load_user(session, user_id)
                return UserContext(
                    user_id=user.id,
                    role=Role(user.hierarchy_role),
                    organization_id=user.organization_id,
                    unit_id=user.organization_unit_id,
                )

    def invalidate_user(self, user_id: str) -> None:
        self._store.flush_tags([self.cache_key(user_id)])
        logger.debug("context.invalidated", extra={"user_id": user_id})

    def invalidate_all(self) -> None:
        removed = self._store.flush_tags([self.CACHE_TAG])
        logger.info("context.invalidated_all", extra={"hit_count": removed})

    def _load_context(self, user_id: str) -> UserContext:
        with self._session_factory() as session:
            user = self._load_user(session, user_id)
            if user.status != UserStatus.ACTIVE.value:
                raise NoActivePositionError(f"user account is {user.status.lower()}")
            role = Role(user.hierarchy_role)
            if role == Role.MASTER:
                return UserContext.master(user.id)

            positions = session.scalars(
                select(Position)
                .where(Position.user_id == user_id, Position.active.is_(True))
                .order_by(Position.created_at.desc(), Position.id.desc())
            ).all()
            if not positions:
                raise NoActivePositionError()
            if len(positions) > 1:
                logger.warning(
                    "context.multiple_active_positions",
                    extra={"user_id": user_id, "position_count": len(positions)},
                )
            position = positions[0]

            department_codes = session.scalars(
                select(Department.code)
                .join(PositionDepartment, PositionDepartment.department_id == Department.id)
                .where(PositionDepartment.position_id == position.id, Department.active.is_(True))
            ).all()
            position_id = position.id
            organization_id = position.organization_id
            unit_id = position.organization_unit_id

        try:
            unit = self._tree.get(unit_id)
        except NotFoundError:
            raise NoActivePositionError("user's position points at a unit that no longer exists") from None
        if not unit.active:
            raise NoActivePositionError("user's position unit is inactive")

        ancestors = tuple(ancestor.id for ancestor in self._tree.ancestors_of(unit.id))
        store_id = unit.id if role == Role.STORE_MANAGER and unit.type == OrgUnitType.STORE else None
        return UserContext(
            user_id=user_id,
            role=role,
            organization_id=organization_id,
            unit_id=unit.id,
            unit_type=unit.type,
            department_codes=frozenset(department_codes),
            ancestor_unit_ids=ancestors,
            store_id=store_id,
            position_id=position_id,
        )

    @staticmethod
    def _load_user(session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None or user.status == UserStatus.DELETED.value:
            raise UserNotFoundError(user_id)
        return user
