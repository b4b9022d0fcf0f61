"""Org-unit tree queries.

The index is a thin, uncached view over an :class:`OrgUnitSource`; every call
reflects the rows the source currently holds. Traversals are iterative with an
explicit visited set so a malformed parent link surfaces as
:class:`CyclicHierarchyError` instead of an endless walk.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from typing import NoReturn, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from orgscope.core.database import SessionLocal
from orgscope.hierarchy.models import OrgUnit
from orgscope.hierarchy.roles import OrgUnitType
from orgscope.metrics import observe_hierarchy_cycle
from orgscope.platform.security.errors import CyclicHierarchyError, InvalidHierarchyError, NotFoundError


logger = logging.getLogger("orgscope.tree")


@dataclass(frozen=True, slots=True)
class OrgUnitNode:
    id: str
    organization_id: str
    type: OrgUnitType
    parent_id: str | None = None
    active: bool = True
    code: str | None = None
    name: str | None = None
    manager_id: str | None = None


class OrgUnitSource(Protocol):
    """Read access to org-unit rows."""

    def get_unit(self, unit_id: str) -> OrgUnitNode | None:
        ...

    def children_of(self, parent_ids: Collection[str], *, include_inactive: bool = False) -> list[OrgUnitNode]:
        ...

    def units_in_organization(self, organization_id: str, *, include_inactive: bool = False) -> list[OrgUnitNode]:
        ...


class InMemoryOrgUnitSource:
    def __init__(self, units: Iterable[OrgUnitNode] = ()) -> None:
        self._units: dict[str, OrgUnitNode] = {unit.id: unit for unit in units}

    def add(self, unit: OrgUnitNode) -> None:
        self._units[unit.id] = unit

    def remove(self, unit_id: str) -> None:
        self._units.pop(unit_id, None)

    def get_unit(self, unit_id: str) -> OrgUnitNode | None:
        return self._units.get(unit_id)

    def children_of(self, parent_ids: Collection[str], *, include_inactive: bool = False) -> list[OrgUnitNode]:
        parents = set(parent_ids)
        children = [
            unit
            for unit in self._units.values()
            if unit.parent_id in parents and (include_inactive or unit.active)
        ]
        return sorted(children, key=lambda unit: unit.id)

    def units_in_organization(self, organization_id: str, *, include_inactive: bool = False) -> list[OrgUnitNode]:
        units = [
            unit
            for unit in self._units.values()
            if unit.organization_id == organization_id and (include_inactive or unit.active)
        ]
        return sorted(units, key=lambda unit: unit.id)


def node_from_row(row: OrgUnit) -> OrgUnitNode:
    return OrgUnitNode(
        id=row.id,
        organization_id=row.organization_id,
        type=OrgUnitType(row.type),
        parent_id=row.parent_id,
        active=bool(row.active),
        code=row.code,
        name=row.name,
        manager_id=row.manager_id,
    )


class DbOrgUnitSource:
    """Org-unit source backed by the ``org_units`` table."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def get_unit(self, unit_id: str) -> OrgUnitNode | None:
        with self._session_factory() as session:
            row = session.get(OrgUnit, unit_id)
            return node_from_row(row) if row is not None else None

    def children_of(self, parent_ids: Collection[str], *, include_inactive: bool = False) -> list[OrgUnitNode]:
        if not parent_ids:
            return []
        stmt = select(OrgUnit).where(OrgUnit.parent_id.in_(list(parent_ids)))
        if not include_inactive:
            stmt = stmt.where(OrgUnit.active.is_(True))
        with self._session_factory() as session:
            rows = session.scalars(stmt.order_by(OrgUnit.id.asc())).all()
            return [node_from_row(row) for row in rows]

    def units_in_organization(self, organization_id: str, *, include_inactive: bool = False) -> list[OrgUnitNode]:
        stmt = select(OrgUnit).where(OrgUnit.organization_id == organization_id)
        if not include_inactive:
            stmt = stmt.where(OrgUnit.active.is_(True))
        with self._session_factory() as session:
            rows = session.scalars(stmt.order_by(OrgUnit.id.asc())).all()
            return [node_from_row(row) for row in rows]


class OrgTreeIndex:
    def __init__(self, source: OrgUnitSource) -> None:
        self._source = source

    def get(self, unit_id: str) -> OrgUnitNode:
        node = self._source.get_unit(unit_id)
        if node is None:
            raise NotFoundError("org unit", unit_id)
        return node

    def ancestors_of(self, unit_id: str) -> list[OrgUnitNode]:
        """Return ancestors ordered from the immediate parent up to the root."""

        node = self.get(unit_id)
        chain: list[OrgUnitNode] = []
        visited = {node.id}
        parent_id = node.parent_id
        while parent_id is not None:
            if parent_id in visited:
                self._raise_cycle(parent_id, [node.id, *(ancestor.id for ancestor in chain), parent_id])
            parent = self._source.get_unit(parent_id)
            if parent is None:
                logger.warning("tree.dangling_parent", extra={"unit_id": chain[-1].id if chain else node.id})
                break
            chain.append(parent)
            visited.add(parent.id)
            parent_id = parent.parent_id
        return chain

    def descendants_of(self, unit_id: str, *, include_inactive: bool = False) -> set[str]:
        """Breadth-first collection of every unit below ``unit_id`` (excluding itself)."""

        self.get(unit_id)
        visited = {unit_id}
        descendants: set[str] = set()
        frontier = [unit_id]
        while frontier:
            next_frontier: list[str] = []
            for child in self._source.children_of(frontier, include_inactive=include_inactive):
                if child.id in visited:
                    self._raise_cycle(child.id, [unit_id, child.parent_id or "", child.id])
                visited.add(child.id)
                descendants.add(child.id)
                next_frontier.append(child.id)
            frontier = next_frontier
        return descendants

    def is_descendant(self, ancestor_id: str, candidate_id: str) -> bool:
        return any(ancestor.id == ancestor_id for ancestor in self.ancestors_of(candidate_id))

    def is_within(self, scope_root_id: str, unit_id: str) -> bool:
        """True when ``unit_id`` is ``scope_root_id`` itself or sits below it."""

        if scope_root_id == unit_id:
            self.get(unit_id)
            return True
        return self.is_descendant(scope_root_id, unit_id)

    def units_in_organization(self, organization_id: str, *, include_inactive: bool = False) -> list[OrgUnitNode]:
        return self._source.units_in_organization(organization_id, include_inactive=include_inactive)

    def validate_placement(
        self,
        unit_type: OrgUnitType,
        organization_id: str,
        parent_id: str | None,
        *,
        unit_id: str | None = None,
    ) -> OrgUnitNode | None:
        """Check that a unit of ``unit_type`` may hang under ``parent_id``.

        Company units are roots, regional units sit under a company unit and
        store units under a regional unit, always within one organization.
        ``unit_id`` is given when an existing unit is being moved; moving it
        under itself or one of its own descendants is rejected as a cycle.
        Returns the parent node (``None`` for company units).
        """

        expected_parent = unit_type.parent_type
        if expected_parent is None:
            if parent_id is not None:
                raise InvalidHierarchyError("company units cannot have a parent unit")
            return None

        if parent_id is None:
            raise InvalidHierarchyError(f"{unit_type.value} units require a {expected_parent.value} parent unit")

        parent = self.get(parent_id)
        if unit_id is not None:
            if parent.id == unit_id or any(ancestor.id == unit_id for ancestor in self.ancestors_of(parent.id)):
                self._raise_cycle(unit_id, [unit_id, parent.id])
        if parent.type != expected_parent:
            raise InvalidHierarchyError(
                f"{unit_type.value} units must be placed under a {expected_parent.value} unit, not a {parent.type.value} unit"
            )
        if parent.organization_id != organization_id:
            raise InvalidHierarchyError("parent unit belongs to another organization")
        if not parent.active:
            raise InvalidHierarchyError("parent unit is inactive")
        return parent

    @staticmethod
    def _raise_cycle(unit_id: str, path: list[str]) -> NoReturn:
        observe_hierarchy_cycle()
        logger.error("tree.cycle_detected", extra={"unit_id": unit_id, "cycle": path})
        raise CyclicHierarchyError(unit_id, path)
