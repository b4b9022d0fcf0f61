from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any

from sqlalchemy import false
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import ColumnElement

from orgscope.hierarchy.roles import Role
from orgscope.hierarchy.tree import OrgTreeIndex
from orgscope.metrics import observe_scope_resolution
from orgscope.platform.security.context import UserContext
from orgscope.platform.security.errors import NotFoundError


logger = logging.getLogger("orgscope.scope")


class ResourceKind(StrEnum):
    USERS = "users"
    STORES = "stores"
    REGIONS = "regions"
    ORGANIZATIONS = "organizations"
    TASKS = "tasks"


DEPARTMENT_SCOPED_RESOURCES = frozenset({ResourceKind.TASKS})


@dataclass(frozen=True, slots=True)
class ScopeFilter:
    """Declarative restriction injected into read queries.

    A dimension left as ``None`` is unconstrained; a dimension that is set must
    match. ``unit_ids`` is the resolved set of visible units when ``unit_id`` is
    set (the unit itself plus, with ``include_descendants``, everything below).
    """

    organization_id: str | None = None
    unit_id: str | None = None
    include_descendants: bool = False
    unit_ids: frozenset[str] | None = None
    department_codes: frozenset[str] | None = None
    match_nothing: bool = False

    @classmethod
    def unconstrained(cls) -> ScopeFilter:
        return cls()

    @classmethod
    def nothing(cls) -> ScopeFilter:
        return cls(match_nothing=True)

    @property
    def is_unconstrained(self) -> bool:
        return (
            not self.match_nothing
            and self.organization_id is None
            and self.unit_id is None
            and self.department_codes is None
        )

    def visible_unit_ids(self) -> frozenset[str] | None:
        if self.unit_id is None:
            return None
        if self.unit_ids is not None:
            return self.unit_ids
        if self.include_descendants:
            raise ValueError("scope filter descendants have not been resolved")
        return frozenset({self.unit_id})

    def matches(
        self,
        *,
        organization_id: str | None = None,
        unit_id: str | None = None,
        department_code: str | None = None,
    ) -> bool:
        if self.match_nothing:
            return False
        if self.organization_id is not None and organization_id != self.organization_id:
            return False
        unit_ids = self.visible_unit_ids()
        if unit_ids is not None and unit_id not in unit_ids:
            return False
        if self.department_codes is not None and department_code not in self.department_codes:
            return False
        return True

    def as_key_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "unit_id": self.unit_id,
            "include_descendants": self.include_descendants,
            "department_codes": sorted(self.department_codes) if self.department_codes is not None else None,
            "match_nothing": self.match_nothing,
        }


class ScopeResolver:
    """Table-driven mapping from a user's role and position to a ScopeFilter."""

    def __init__(self, tree: OrgTreeIndex) -> None:
        self._tree = tree
        self._rules: dict[Role, Callable[[UserContext], ScopeFilter]] = {
            Role.MASTER: self._master_scope,
            Role.GO: self._organization_scope,
            Role.GR: self._region_scope,
            Role.STORE_MANAGER: self._store_scope,
        }

    def resolve_scope(self, ctx: UserContext, resource_kind: ResourceKind) -> ScopeFilter:
        scope = self._rules[ctx.role](ctx)
        if (
            not scope.match_nothing
            and resource_kind in DEPARTMENT_SCOPED_RESOURCES
            and not ctx.has_all_departments
        ):
            scope = replace(scope, department_codes=frozenset(ctx.department_codes))

        observe_scope_resolution(role=ctx.role.value, resource=resource_kind.value)
        logger.debug(
            "scope.resolved",
            extra={"user_id": ctx.user_id, "role": ctx.role.value, "resource": resource_kind.value},
        )
        return scope

    @staticmethod
    def _master_scope(ctx: UserContext) -> ScopeFilter:
        return ScopeFilter.unconstrained()

    @staticmethod
    def _organization_scope(ctx: UserContext) -> ScopeFilter:
        if ctx.organization_id is None:
            return ScopeFilter.nothing()
        return ScopeFilter(organization_id=ctx.organization_id)

    def _region_scope(self, ctx: UserContext) -> ScopeFilter:
        if ctx.unit_id is None:
            return ScopeFilter.nothing()
        try:
            descendants = self._tree.descendants_of(ctx.unit_id)
        except NotFoundError:
            logger.warning("scope.unit_missing", extra={"user_id": ctx.user_id, "role": ctx.role.value})
            return ScopeFilter.nothing()
        return ScopeFilter(
            unit_id=ctx.unit_id,
            include_descendants=True,
            unit_ids=frozenset({ctx.unit_id, *descendants}),
        )

    @staticmethod
    def _store_scope(ctx: UserContext) -> ScopeFilter:
        if ctx.unit_id is None:
            return ScopeFilter.nothing()
        return ScopeFilter(unit_id=ctx.unit_id, include_descendants=False, unit_ids=frozenset({ctx.unit_id}))


def apply_scope_filter(
    query: Select[Any],
    scope: ScopeFilter,
    *,
    organization_column: ColumnElement[Any] | None = None,
    unit_column: ColumnElement[Any] | None = None,
    department_column: ColumnElement[Any] | None = None,
) -> Select[Any]:
    """Apply every present scope dimension to ``query``.

    A present dimension without a column to apply it to is a programming error;
    the filter is never applied partially.
    """

    if scope.match_nothing:
        return query.where(false())

    if scope.organization_id is not None:
        if organization_column is None:
            raise ValueError("scope restricts organization but no organization column was given")
        query = query.where(organization_column == scope.organization_id)

    unit_ids = scope.visible_unit_ids()
    if unit_ids is not None:
        if unit_column is None:
            raise ValueError("scope restricts units but no unit column was given")
        query = query.where(unit_column.in_(sorted(unit_ids)))

    if scope.department_codes is not None:
        if department_column is None:
            raise ValueError("scope restricts departments but no department column was given")
        query = query.where(department_column.in_(sorted(scope.department_codes)))

    return query
