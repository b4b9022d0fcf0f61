from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    """Hierarchy roles in descending order of authority."""

    MASTER = "MASTER"
    GO = "GO"
    GR = "GR"
    STORE_MANAGER = "STORE_MANAGER"

    @property
    def level(self) -> int:
        return _ROLE_LEVELS[self]

    def outranks(self, other: Role) -> bool:
        return self.level > other.level


_ROLE_LEVELS: dict[Role, int] = {
    Role.MASTER: 4,
    Role.GO: 3,
    Role.GR: 2,
    Role.STORE_MANAGER: 1,
}


class OrgUnitType(StrEnum):
    COMPANY = "company"
    REGIONAL = "regional"
    STORE = "store"

    @property
    def parent_type(self) -> OrgUnitType | None:
        return _PARENT_TYPES[self]


_PARENT_TYPES: dict[OrgUnitType, OrgUnitType | None] = {
    OrgUnitType.COMPANY: None,
    OrgUnitType.REGIONAL: OrgUnitType.COMPANY,
    OrgUnitType.STORE: OrgUnitType.REGIONAL,
}


class DepartmentType(StrEnum):
    ADMINISTRATIVE = "administrative"
    FINANCIAL = "financial"
    MARKETING = "marketing"
    OPERATIONS = "operations"
    TRADE = "trade"
    MACRO = "macro"


OPERATIONAL_DEPARTMENTS = frozenset({DepartmentType.OPERATIONS, DepartmentType.TRADE, DepartmentType.MARKETING})


class UserStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class TaskStatus(StrEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    BLOCKED = "BLOCKED"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.CANCELLED})
