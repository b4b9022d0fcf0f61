"""Single source of cache tags for every entity type.

Read paths tag their entries with ``scope_read_tags``; write paths invalidate
with the ``*_write_tags`` function for the entity they touched. Both sides
build tags through the same helpers below, so a tag a read can carry is a tag
the matching write can produce.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from orgscope.hierarchy.roles import OrgUnitType
from orgscope.hierarchy.tree import OrgUnitNode
from orgscope.platform.cache.scoped import normalize_filters
from orgscope.platform.security.scope import ResourceKind, ScopeFilter


HIERARCHY_TAG = "hierarchy"

_UNIT_FILTERS = frozenset({"unit_id", "store_id", "organization_unit_id", "parent_id"})
_ROLE_FILTERS = frozenset({"hierarchy_role", "role"})

_KIND_BY_UNIT_TYPE = {
    OrgUnitType.COMPANY: ResourceKind.ORGANIZATIONS,
    OrgUnitType.REGIONAL: ResourceKind.REGIONS,
    OrgUnitType.STORE: ResourceKind.STORES,
}


@dataclass(frozen=True, slots=True)
class TagSubject:
    """The placement of one entity state, before or after a write."""

    entity_id: str
    organization_id: str | None = None
    unit_id: str | None = None
    role: str | None = None
    department_code: str | None = None
    ancestor_unit_ids: tuple[str, ...] = ()


def organization_tag(organization_id: str) -> str:
    return f"organization:{organization_id}"


def unit_tag(unit_id: str) -> str:
    return f"unit:{unit_id}"


def user_tag(user_id: str) -> str:
    return f"user:{user_id}"


def role_tag(kind: str, role: str) -> str:
    return f"{kind}:role:{role}"


def department_tag(kind: str, code: str) -> str:
    return f"{kind}:department:{code}"


def resource_tags(kind: str) -> list[str]:
    return [kind, f"{kind}:list"]


def kind_for_unit_type(unit_type: OrgUnitType | str) -> ResourceKind:
    return _KIND_BY_UNIT_TYPE[OrgUnitType(unit_type)]


def scope_read_tags(
    kind: str,
    scope: ScopeFilter,
    filters: Mapping[str, Any] | None = None,
) -> set[str]:
    tags = set(resource_tags(kind))
    if scope.organization_id is not None:
        tags.add(organization_tag(scope.organization_id))
    if scope.unit_id is not None:
        tags.add(unit_tag(scope.unit_id))
    if scope.include_descendants:
        tags.add(HIERARCHY_TAG)
    for code in sorted(scope.department_codes or ()):
        tags.add(department_tag(kind, code))

    for name, value in normalize_filters(filters).items():
        if name == "organization_id":
            tags.add(organization_tag(str(value)))
        elif name in _UNIT_FILTERS:
            tags.add(unit_tag(str(value)))
        elif name in _ROLE_FILTERS:
            tags.add(role_tag(kind, str(value)))
    return tags


def _placement_tags(subject: TagSubject) -> set[str]:
    tags: set[str] = set()
    if subject.organization_id is not None:
        tags.add(organization_tag(subject.organization_id))
    if subject.unit_id is not None:
        tags.add(unit_tag(subject.unit_id))
    tags.update(unit_tag(ancestor_id) for ancestor_id in subject.ancestor_unit_ids)
    return tags


def user_write_tags(*subjects: TagSubject | None) -> set[str]:
    """Tags touched by a user write; pass both the old and the new state."""

    kind = ResourceKind.USERS.value
    tags = set(resource_tags(kind))
    for subject in subjects:
        if subject is None:
            continue
        tags.add(user_tag(subject.entity_id))
        tags |= _placement_tags(subject)
        if subject.role is not None:
            tags.add(role_tag(kind, subject.role))
    return tags


def unit_write_tags(*nodes: OrgUnitNode | None, ancestors: Iterable[str] = ()) -> set[str]:
    tags = {HIERARCHY_TAG}
    for node in nodes:
        if node is None:
            continue
        tags.update(resource_tags(kind_for_unit_type(node.type).value))
        tags.add(unit_tag(node.id))
        tags.add(organization_tag(node.organization_id))
        if node.parent_id is not None:
            tags.add(f"parent:{node.parent_id}")
            tags.add(unit_tag(node.parent_id))
    tags.update(unit_tag(ancestor_id) for ancestor_id in ancestors)
    return tags


def organization_write_tags(organization_id: str) -> set[str]:
    return {
        *resource_tags(ResourceKind.ORGANIZATIONS.value),
        organization_tag(organization_id),
        HIERARCHY_TAG,
    }


def task_write_tags(*subjects: TagSubject | None) -> set[str]:
    kind = ResourceKind.TASKS.value
    tags = set(resource_tags(kind))
    for subject in subjects:
        if subject is None:
            continue
        tags.add(f"task:{subject.entity_id}")
        tags |= _placement_tags(subject)
        if subject.department_code is not None:
            tags.add(department_tag(kind, subject.department_code))
    return tags
