"""Reference use-cases wiring the access-control core together.

Reads resolve the caller's scope, filter the query with it and go through the
scoped cache. Writes check permissions, commit, and only then invalidate the
cache tags and user contexts the change could have made stale.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orgscope import audit
from orgscope.hierarchy.models import Department, Organization, OrgUnit, Position, PositionDepartment, Task, User
from orgscope.hierarchy.roles import OrgUnitType, Role, UserStatus
from orgscope.hierarchy.schemas import (
    ManagerAssign,
    OrganizationCreate,
    OrganizationRead,
    OrgUnitCreate,
    OrgUnitMove,
    OrgUnitPage,
    OrgUnitRead,
    PositionAssign,
    PositionRead,
    TaskCreate,
    TaskPage,
    TaskRead,
    TaskStatusUpdate,
    UserPage,
    UserRead,
    UserUpdate,
)
from orgscope.hierarchy.tree import OrgTreeIndex, node_from_row
from orgscope.platform.cache.scoped import ScopedCache, build_cache_key
from orgscope.platform.cache.tags import (
    TagSubject,
    organization_write_tags,
    scope_read_tags,
    task_write_tags,
    unit_write_tags,
    user_write_tags,
)
from orgscope.platform.security.errors import (
    AuthorizationDeniedError,
    ConflictError,
    InvalidHierarchyError,
    NotFoundError,
    UserNotFoundError,
)
from orgscope.platform.security.permissions import DependentKind, Operation, PermissionEvaluator
from orgscope.platform.security.provider import ContextProvider
from orgscope.platform.security.scope import ResourceKind, ScopeFilter, ScopeResolver, apply_scope_filter


logger = logging.getLogger("orgscope.hierarchy")

MANAGER_ROLES = frozenset({Role.GR, Role.STORE_MANAGER})

_UNIT_TYPE_FOR_ROLE = {
    Role.GO: OrgUnitType.COMPANY,
    Role.GR: OrgUnitType.REGIONAL,
    Role.STORE_MANAGER: OrgUnitType.STORE,
}

_STORE_SORT_COLUMNS = {
    "name": OrgUnit.name,
    "code": OrgUnit.code,
    "created_at": OrgUnit.created_at,
}

_USER_SORT_COLUMNS = {
    "name": User.name,
    "email": User.email,
    "created_at": User.created_at,
}

_TASK_SORT_COLUMNS = {
    "title": Task.title,
    "status": Task.status,
    "created_at": Task.created_at,
}


class HierarchyService:
    def __init__(
        self,
        *,
        tree: OrgTreeIndex,
        provider: ContextProvider,
        cache: ScopedCache,
        permissions: PermissionEvaluator,
        resolver: ScopeResolver | None = None,
    ) -> None:
        self._tree = tree
        self._provider = provider
        self._cache = cache
        self._permissions = permissions
        self._resolver = resolver or ScopeResolver(tree)

    @property
    def provider(self) -> ContextProvider:
        return self._provider

    def list_stores(
        self,
        session: Session,
        actor_user_id: str,
        *,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        per_page: int = 20,
        sort_by: str | None = None,
        sort_direction: str | None = None,
    ) -> OrgUnitPage:
        ctx = self._provider.get_context(actor_user_id)
        kind = ResourceKind.STORES
        scope = self._resolver.resolve_scope(ctx, kind)
        filters = filters or {}
        key = build_cache_key(
            kind.value,
            role=ctx.role.value,
            scope=scope,
            filters=filters,
            page=page,
            per_page=per_page,
            sort_by=sort_by,
            sort_direction=sort_direction,
        )
        payload = self._cache.remember(
            key,
            scope_read_tags(kind.value, scope, filters),
            lambda: self._query_stores(session, scope, filters, page, per_page, sort_by, sort_direction).model_dump(
                mode="json"
            ),
            resource=kind.value,
        )
        return OrgUnitPage.model_validate(payload)

    def list_users(
        self,
        session: Session,
        actor_user_id: str,
        *,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        per_page: int = 20,
        sort_by: str | None = None,
        sort_direction: str | None = None,
    ) -> UserPage:
        ctx = self._provider.get_context(actor_user_id)
        kind = ResourceKind.USERS
        scope = self._resolver.resolve_scope(ctx, kind)
        filters = filters or {}
        key = build_cache_key(
            kind.value,
            role=ctx.role.value,
            scope=scope,
            filters=filters,
            page=page,
            per_page=per_page,
            sort_by=sort_by,
            sort_direction=sort_direction,
        )
        payload = self._cache.remember(
            key,
            scope_read_tags(kind.value, scope, filters),
            lambda: self._query_users(session, scope, filters, page, per_page, sort_by, sort_direction).model_dump(
                mode="json"
            ),
            resource=kind.value,
        )
        return UserPage.model_validate(payload)

    def create_organization(self, session: Session, actor_user_id: str, dto: OrganizationCreate) -> OrganizationRead:
        actor = self._provider.get_context(actor_user_id)
        self._permissions.require_unit(actor, None, Operation.CREATE)

        organization = Organization(name=dto.name.strip(), code=dto.code.strip().upper())
        session.add(organization)
        self._flush(session, "organization code already exists")
        session.add(
            OrgUnit(
                organization_id=organization.id,
                type=OrgUnitType.COMPANY.value,
                name=organization.name,
                code=organization.code,
            )
        )
        self._commit(session, "organization code already exists")
        session.refresh(organization)

        self._cache.invalidate_tags(organization_write_tags(organization.id))
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.organization",
            entity_id=organization.id,
            action="create",
            before=None,
            after={"name": organization.name, "code": organization.code},
        )
        logger.info(
            "hierarchy.organization_created",
            extra={"actor_user_id": actor.user_id, "organization_id": organization.id},
        )
        return OrganizationRead.model_validate(organization)

    def delete_organization(self, session: Session, actor_user_id: str, organization_id: str) -> None:
        actor = self._provider.get_context(actor_user_id)
        self._permissions.require_unit(actor, None, Operation.DELETE)

        organization = session.get(Organization, organization_id)
        if organization is None:
            raise NotFoundError("organization", organization_id)
        self._permissions.require_no_dependents(DependentKind.ORGANIZATION, organization_id)
        before = {"name": organization.name, "code": organization.code}

        # children before parents
        for unit_type in (OrgUnitType.STORE, OrgUnitType.REGIONAL, OrgUnitType.COMPANY):
            units = session.scalars(
                select(OrgUnit).where(OrgUnit.organization_id == organization_id, OrgUnit.type == unit_type.value)
            ).all()
            for unit in units:
                session.delete(unit)
            session.flush()
        session.delete(organization)
        self._commit(session, "organization is still referenced")

        self._cache.invalidate_tags(organization_write_tags(organization_id))
        self._provider.invalidate_all()
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.organization",
            entity_id=organization_id,
            action="delete",
            before=before,
            after=None,
        )
        logger.info(
            "hierarchy.organization_deleted",
            extra={"actor_user_id": actor.user_id, "organization_id": organization_id},
        )

    def create_unit(self, session: Session, actor_user_id: str, dto: OrgUnitCreate) -> OrgUnitRead:
        actor = self._provider.get_context(actor_user_id)
        self._permissions.require_unit(actor, dto.parent_id, Operation.CREATE)
        self._tree.validate_placement(dto.type, dto.organization_id, dto.parent_id)
        if dto.manager_id is not None:
            self._validate_manager(session, dto.manager_id, dto.organization_id)

        unit = OrgUnit(
            organization_id=dto.organization_id,
            parent_id=dto.parent_id,
            type=dto.type.value,
            name=dto.name.strip(),
            code=dto.code.strip().upper(),
            manager_id=dto.manager_id,
        )
        session.add(unit)
        self._commit(session, "unit code already exists in this organization")
        session.refresh(unit)

        node = node_from_row(unit)
        self._cache.invalidate_tags(unit_write_tags(node, ancestors=self._ancestor_ids(node.id)))
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.org_unit",
            entity_id=unit.id,
            action="create",
            before=None,
            after={"type": unit.type, "parent_id": unit.parent_id, "code": unit.code, "manager_id": unit.manager_id},
        )
        logger.info(
            "hierarchy.unit_created",
            extra={"actor_user_id": actor.user_id, "unit_id": unit.id, "organization_id": unit.organization_id},
        )
        return OrgUnitRead.model_validate(unit)

    def move_unit(self, session: Session, actor_user_id: str, unit_id: str, dto: OrgUnitMove) -> OrgUnitRead:
        """Re-parent ``unit_id``; ancestor chains below it change, so every cached context is dropped."""

        actor = self._provider.get_context(actor_user_id)
        self._permissions.require_unit(actor, unit_id, Operation.UPDATE)
        self._permissions.require_unit(actor, dto.parent_id, Operation.UPDATE)

        before = self._tree.get(unit_id)
        self._tree.validate_placement(before.type, before.organization_id, dto.parent_id, unit_id=unit_id)
        old_ancestors = self._ancestor_ids(unit_id)

        unit = session.get(OrgUnit, unit_id)
        if unit is None:
            raise NotFoundError("org unit", unit_id)
        unit.parent_id = dto.parent_id
        self._commit(session, "unit move conflicts with existing data")
        session.refresh(unit)

        after = node_from_row(unit)
        self._cache.invalidate_tags(
            unit_write_tags(before, after, ancestors=(*old_ancestors, *self._ancestor_ids(unit_id)))
        )
        self._provider.invalidate_all()
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.org_unit",
            entity_id=unit_id,
            action="move",
            before={"parent_id": before.parent_id},
            after={"parent_id": after.parent_id},
        )
        logger.info(
            "hierarchy.unit_moved",
            extra={"actor_user_id": actor.user_id, "unit_id": unit_id, "organization_id": after.organization_id},
        )
        return OrgUnitRead.model_validate(unit)

    def assign_manager(
        self,
        session: Session,
        actor_user_id: str,
        unit_id: str,
        dto: ManagerAssign,
    ) -> OrgUnitRead:
        actor = self._provider.get_context(actor_user_id)
        self._permissions.require_unit(actor, unit_id, Operation.ASSIGN)

        unit = session.get(OrgUnit, unit_id)
        if unit is None:
            raise NotFoundError("org unit", unit_id)
        if unit.type != OrgUnitType.STORE.value:
            raise InvalidHierarchyError("managers can only be assigned to stores")
        if dto.manager_id is not None:
            self._validate_manager(session, dto.manager_id, unit.organization_id)
            target = self._provider.get_target_context(dto.manager_id)
            self._permissions.require(actor, target, Operation.ASSIGN)

        previous_manager_id = unit.manager_id
        unit.manager_id = dto.manager_id
        self._commit(session, "manager assignment conflicts with existing data")
        session.refresh(unit)

        node = node_from_row(unit)
        self._cache.invalidate_tags(unit_write_tags(node, ancestors=self._ancestor_ids(node.id)))
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.org_unit",
            entity_id=unit.id,
            action="assign_manager",
            before={"manager_id": previous_manager_id},
            after={"manager_id": unit.manager_id},
        )
        return OrgUnitRead.model_validate(unit)

    def delete_store(self, session: Session, actor_user_id: str, unit_id: str) -> None:
        actor = self._provider.get_context(actor_user_id)
        self._permissions.require_unit(actor, unit_id, Operation.DELETE)

        unit = session.get(OrgUnit, unit_id)
        if unit is None:
            raise NotFoundError("store", unit_id)
        if unit.type != OrgUnitType.STORE.value:
            raise InvalidHierarchyError("unit is not a store")
        self._permissions.require_no_dependents(DependentKind.STORE, unit_id)

        node = node_from_row(unit)
        ancestors = self._ancestor_ids(node.id)
        session.delete(unit)
        self._commit(session, "store is still referenced")

        self._cache.invalidate_tags(unit_write_tags(node, ancestors=ancestors))
        self._provider.invalidate_all()
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.org_unit",
            entity_id=unit_id,
            action="delete",
            before={"type": node.type.value, "parent_id": node.parent_id, "code": node.code},
            after=None,
        )
        logger.info("hierarchy.store_deleted", extra={"actor_user_id": actor.user_id, "unit_id": unit_id})

    def update_user(self, session: Session, actor_user_id: str, user_id: str, dto: UserUpdate) -> UserRead:
        actor = self._provider.get_context(actor_user_id)
        target = self._provider.get_target_context(user_id)
        changes = dto.model_dump(mode="json", exclude_unset=True)
        self._permissions.require(actor, target, Operation.UPDATE, fields=changes)

        new_role = changes.get("hierarchy_role")
        if new_role is not None and not actor.is_master and not actor.role.outranks(Role(new_role)):
            raise AuthorizationDeniedError("cannot grant a role at or above your own level")

        user = self._get_user(session, user_id)
        before_subject = self._user_subject(user)
        before = {name: getattr(user, name) for name in changes}

        resulting_role = Role(changes.get("hierarchy_role", user.hierarchy_role))
        resulting_org = changes.get("organization_id", user.organization_id)
        if resulting_role == Role.MASTER and resulting_org is not None:
            raise InvalidHierarchyError("MASTER users cannot belong to an organization")
        resulting_unit_id = changes.get("organization_unit_id", user.organization_unit_id)
        if resulting_unit_id is not None:
            unit = session.get(OrgUnit, resulting_unit_id)
            if unit is None:
                raise NotFoundError("org unit", resulting_unit_id)
            if unit.organization_id != resulting_org:
                raise InvalidHierarchyError("unit belongs to another organization")

        relocated = resulting_org != user.organization_id or resulting_unit_id != user.organization_unit_id
        for name, value in changes.items():
            setattr(user, name, value)
        closed_positions = 0
        if relocated:
            # Authority follows the active position, so positions left behind stop counting.
            closed_positions = session.execute(
                update(Position)
                .where(
                    Position.user_id == user_id,
                    Position.active.is_(True),
                    (Position.organization_id != resulting_org) | (Position.organization_unit_id != resulting_unit_id),
                )
                .values(active=False)
            ).rowcount
        self._commit(session, "user update conflicts with existing data")
        session.refresh(user)

        self._cache.invalidate_tags(user_write_tags(before_subject, self._user_subject(user)))
        self._provider.invalidate_user(user_id)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.user",
            entity_id=user_id,
            action="update",
            before=before,
            after=changes,
        )
        if closed_positions:
            logger.info(
                "hierarchy.positions_closed",
                extra={"actor_user_id": actor.user_id, "user_id": user_id, "position_count": closed_positions},
            )
        return UserRead.model_validate(user)

    def delete_user(self, session: Session, actor_user_id: str, user_id: str) -> None:
        actor = self._provider.get_context(actor_user_id)
        target = self._provider.get_target_context(user_id)
        self._permissions.require(actor, target, Operation.DELETE)
        self._permissions.require_no_dependents(DependentKind.USER, user_id)

        user = self._get_user(session, user_id)
        subject = self._user_subject(user)
        previous_status = user.status
        user.status = UserStatus.DELETED.value
        session.execute(
            update(Position).where(Position.user_id == user_id, Position.active.is_(True)).values(active=False)
        )
        self._commit(session, "user is still referenced")

        self._cache.invalidate_tags(user_write_tags(subject))
        self._provider.invalidate_user(user_id)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.user",
            entity_id=user_id,
            action="soft_delete",
            before={"status": previous_status},
            after={"status": UserStatus.DELETED.value},
        )
        logger.info("hierarchy.user_deleted", extra={"actor_user_id": actor.user_id, "user_id": user_id})

    def assign_position(
        self,
        session: Session,
        actor_user_id: str,
        user_id: str,
        dto: PositionAssign,
    ) -> PositionRead:
        """Give ``user_id`` a new active position; any previous one is deactivated."""

        actor = self._provider.get_context(actor_user_id)
        target = self._provider.get_target_context(user_id)
        self._permissions.require(actor, target, Operation.ASSIGN)
        self._permissions.require_unit(actor, dto.organization_unit_id, Operation.ASSIGN)

        unit = self._tree.get(dto.organization_unit_id)
        if not unit.active:
            raise InvalidHierarchyError("unit is inactive")

        user = self._get_user(session, user_id)
        role = Role(user.hierarchy_role)
        if role == Role.MASTER:
            raise InvalidHierarchyError("MASTER users do not hold positions")
        if unit.type != _UNIT_TYPE_FOR_ROLE[role]:
            raise InvalidHierarchyError(f"{role.value} positions must be held at a {_UNIT_TYPE_FOR_ROLE[role].value} unit")

        departments = self._load_departments(session, unit.organization_id, dto.department_codes)
        if not actor.is_master:
            for department in departments:
                if not PermissionEvaluator.can_delegate_department(actor.role, role, department.type):
                    raise AuthorizationDeniedError(f"cannot delegate the {department.type} department")

        before_subject = self._user_subject(user)
        session.execute(
            update(Position).where(Position.user_id == user_id, Position.active.is_(True)).values(active=False)
        )
        position = Position(
            user_id=user_id,
            organization_id=unit.organization_id,
            organization_unit_id=unit.id,
            level=role.value,
        )
        session.add(position)
        self._flush(session, "position assignment conflicts with existing data")
        for department in departments:
            session.add(PositionDepartment(position_id=position.id, department_id=department.id))
        user.organization_id = unit.organization_id
        user.organization_unit_id = unit.id
        self._commit(session, "position assignment conflicts with existing data")
        session.refresh(position)
        session.refresh(user)

        self._cache.invalidate_tags(user_write_tags(before_subject, self._user_subject(user)))
        self._provider.invalidate_user(user_id)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.position",
            entity_id=position.id,
            action="assign",
            before={"organization_unit_id": before_subject.unit_id},
            after={
                "user_id": user_id,
                "organization_unit_id": unit.id,
                "department_codes": sorted(department.code for department in departments),
            },
        )
        return PositionRead.model_validate(position)

    def list_tasks(
        self,
        session: Session,
        actor_user_id: str,
        *,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        per_page: int = 20,
        sort_by: str | None = None,
        sort_direction: str | None = None,
    ) -> TaskPage:
        ctx = self._provider.get_context(actor_user_id)
        kind = ResourceKind.TASKS
        scope = self._resolver.resolve_scope(ctx, kind)
        filters = filters or {}
        key = build_cache_key(
            kind.value,
            role=ctx.role.value,
            scope=scope,
            filters=filters,
            page=page,
            per_page=per_page,
            sort_by=sort_by,
            sort_direction=sort_direction,
        )
        payload = self._cache.remember(
            key,
            scope_read_tags(kind.value, scope, filters),
            lambda: self._query_tasks(session, scope, filters, page, per_page, sort_by, sort_direction).model_dump(
                mode="json"
            ),
            resource=kind.value,
        )
        return TaskPage.model_validate(payload)

    def create_task(self, session: Session, actor_user_id: str, dto: TaskCreate) -> TaskRead:
        """Create a task at a unit and department inside the actor's task scope.

        When no department is given and the actor holds exactly one, that one
        is used.
        """

        actor = self._provider.get_context(actor_user_id)
        scope = self._resolver.resolve_scope(actor, ResourceKind.TASKS)
        unit = self._tree.get(dto.organization_unit_id)
        if not unit.active:
            raise InvalidHierarchyError("unit is inactive")

        department_code = dto.department_code
        if department_code is None and not actor.has_all_departments and len(actor.department_codes) == 1:
            (department_code,) = actor.department_codes
        if not scope.matches(organization_id=unit.organization_id, unit_id=unit.id, department_code=department_code):
            raise AuthorizationDeniedError("task placement is outside your scope")
        if department_code is not None:
            self._load_departments(session, unit.organization_id, [department_code])
        if dto.assigned_to is not None:
            assignee = self._get_user(session, dto.assigned_to)
            if assignee.organization_id != unit.organization_id:
                raise InvalidHierarchyError("assignee belongs to another organization")

        task = Task(
            organization_id=unit.organization_id,
            organization_unit_id=unit.id,
            department_code=department_code,
            title=dto.title.strip(),
            created_by=actor.user_id,
            assigned_to=dto.assigned_to,
        )
        session.add(task)
        self._commit(session, "task conflicts with existing data")
        session.refresh(task)

        self._cache.invalidate_tags(task_write_tags(self._task_subject(task)))
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.task",
            entity_id=task.id,
            action="create",
            before=None,
            after={"organization_unit_id": task.organization_unit_id, "department_code": task.department_code},
        )
        logger.info("hierarchy.task_created", extra={"actor_user_id": actor.user_id, "unit_id": task.organization_unit_id})
        return TaskRead.model_validate(task)

    def update_task_status(
        self,
        session: Session,
        actor_user_id: str,
        task_id: str,
        dto: TaskStatusUpdate,
    ) -> TaskRead:
        actor = self._provider.get_context(actor_user_id)
        scope = self._resolver.resolve_scope(actor, ResourceKind.TASKS)
        task = session.get(Task, task_id)
        # tasks outside the caller's scope are reported as missing
        if task is None or not scope.matches(
            organization_id=task.organization_id,
            unit_id=task.organization_unit_id,
            department_code=task.department_code,
        ):
            raise NotFoundError("task", task_id)

        previous_status = task.status
        task.status = dto.status.value
        self._commit(session, "task update conflicts with existing data")
        session.refresh(task)

        self._cache.invalidate_tags(task_write_tags(self._task_subject(task)))
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="hierarchy.task",
            entity_id=task.id,
            action="update_status",
            before={"status": previous_status},
            after={"status": task.status},
        )
        return TaskRead.model_validate(task)

    def _query_stores(
        self,
        session: Session,
        scope: ScopeFilter,
        filters: dict[str, Any],
        page: int,
        per_page: int,
        sort_by: str | None,
        sort_direction: str | None,
    ) -> OrgUnitPage:
        stmt = select(OrgUnit).where(OrgUnit.type == OrgUnitType.STORE.value)
        stmt = apply_scope_filter(stmt, scope, organization_column=OrgUnit.organization_id, unit_column=OrgUnit.id)

        if filters.get("organization_id"):
            stmt = stmt.where(OrgUnit.organization_id == filters["organization_id"])
        if filters.get("parent_id"):
            stmt = stmt.where(OrgUnit.parent_id == filters["parent_id"])
        if filters.get("active") is not None:
            stmt = stmt.where(OrgUnit.active.is_(bool(filters["active"])))
        if filters.get("search"):
            stmt = stmt.where(OrgUnit.name.ilike(f"%{filters['search']}%"))

        total = int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
        column = _STORE_SORT_COLUMNS.get(sort_by or "name", OrgUnit.name)
        ordering = column.desc() if (sort_direction or "").lower() == "desc" else column.asc()
        rows = session.scalars(stmt.order_by(ordering, OrgUnit.id.asc()).offset((page - 1) * per_page).limit(per_page)).all()
        return OrgUnitPage(
            items=[OrgUnitRead.model_validate(row) for row in rows],
            total=total,
            page=page,
            per_page=per_page,
        )

    def _query_users(
        self,
        session: Session,
        scope: ScopeFilter,
        filters: dict[str, Any],
        page: int,
        per_page: int,
        sort_by: str | None,
        sort_direction: str | None,
    ) -> UserPage:
        stmt = select(User).where(User.status != UserStatus.DELETED.value)
        stmt = apply_scope_filter(
            stmt,
            scope,
            organization_column=User.organization_id,
            unit_column=User.organization_unit_id,
        )

        if filters.get("organization_id"):
            stmt = stmt.where(User.organization_id == filters["organization_id"])
        if filters.get("organization_unit_id"):
            stmt = stmt.where(User.organization_unit_id == filters["organization_unit_id"])
        if filters.get("hierarchy_role"):
            stmt = stmt.where(User.hierarchy_role == filters["hierarchy_role"])
        if filters.get("status"):
            stmt = stmt.where(User.status == filters["status"])
        if filters.get("search"):
            stmt = stmt.where(User.name.ilike(f"%{filters['search']}%"))

        total = int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
        column = _USER_SORT_COLUMNS.get(sort_by or "name", User.name)
        ordering = column.desc() if (sort_direction or "").lower() == "desc" else column.asc()
        rows = session.scalars(stmt.order_by(ordering, User.id.asc()).offset((page - 1) * per_page).limit(per_page)).all()
        return UserPage(
            items=[UserRead.model_validate(row) for row in rows],
            total=total,
            page=page,
            per_page=per_page,
        )

    def _query_tasks(
        self,
        session: Session,
        scope: ScopeFilter,
        filters: dict[str, Any],
        page: int,
        per_page: int,
        sort_by: str | None,
        sort_direction: str | None,
    ) -> TaskPage:
        stmt = apply_scope_filter(
            select(Task),
            scope,
            organization_column=Task.organization_id,
            unit_column=Task.organization_unit_id,
            department_column=Task.department_code,
        )

        if filters.get("organization_unit_id"):
            stmt = stmt.where(Task.organization_unit_id == filters["organization_unit_id"])
        if filters.get("department_code"):
            stmt = stmt.where(Task.department_code == filters["department_code"])
        if filters.get("status"):
            stmt = stmt.where(Task.status == filters["status"])
        if filters.get("assigned_to"):
            stmt = stmt.where(Task.assigned_to == filters["assigned_to"])
        if filters.get("search"):
            stmt = stmt.where(Task.title.ilike(f"%{filters['search']}%"))

        total = int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
        column = _TASK_SORT_COLUMNS.get(sort_by or "created_at", Task.created_at)
        ordering = column.desc() if (sort_direction or "").lower() == "desc" else column.asc()
        rows = session.scalars(stmt.order_by(ordering, Task.id.asc()).offset((page - 1) * per_page).limit(per_page)).all()
        return TaskPage(
            items=[TaskRead.model_validate(row) for row in rows],
            total=total,
            page=page,
            per_page=per_page,
        )

    def _validate_manager(self, session: Session, manager_id: str, organization_id: str) -> User:
        manager = self._get_user(session, manager_id)
        if Role(manager.hierarchy_role) not in MANAGER_ROLES:
            raise InvalidHierarchyError("store managers must hold the GR or STORE_MANAGER role")
        if manager.organization_id != organization_id:
            raise InvalidHierarchyError("manager belongs to another organization")
        return manager

    @staticmethod
    def _load_departments(session: Session, organization_id: str, codes: Iterable[str]) -> list[Department]:
        wanted = sorted(set(codes))
        if not wanted:
            return []
        departments = session.scalars(
            select(Department).where(
                Department.organization_id == organization_id,
                Department.code.in_(wanted),
                Department.active.is_(True),
            )
        ).all()
        if len(departments) != len(wanted):
            raise NotFoundError("department")
        return list(departments)

    @staticmethod
    def _get_user(session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None or user.status == UserStatus.DELETED.value:
            raise UserNotFoundError(user_id)
        return user

    def _user_subject(self, user: User) -> TagSubject:
        return TagSubject(
            entity_id=user.id,
            organization_id=user.organization_id,
            unit_id=user.organization_unit_id,
            role=user.hierarchy_role,
            ancestor_unit_ids=self._ancestor_ids(user.organization_unit_id),
        )

    def _task_subject(self, task: Task) -> TagSubject:
        return TagSubject(
            entity_id=task.id,
            organization_id=task.organization_id,
            unit_id=task.organization_unit_id,
            department_code=task.department_code,
            ancestor_unit_ids=self._ancestor_ids(task.organization_unit_id),
        )

    def _ancestor_ids(self, unit_id: str | None) -> tuple[str, ...]:
        if unit_id is None:
            return ()
        try:
            return tuple(ancestor.id for ancestor in self._tree.ancestors_of(unit_id))
        except NotFoundError:
            return ()

    @staticmethod
    def _flush(session: Session, conflict_reason: str) -> None:
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(conflict_reason) from exc

    @staticmethod
    def _commit(session: Session, conflict_reason: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(conflict_reason) from exc

