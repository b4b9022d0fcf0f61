from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from orgscope.hierarchy.roles import OrgUnitType, Role


WILDCARD_DEPARTMENT = "*"


@dataclass(frozen=True, slots=True)
class UserContext:
    """Organizational snapshot of a user used by scope and permission checks."""

    user_id: str
    role: Role
    organization_id: str | None = None
    unit_id: str | None = None
    unit_type: OrgUnitType | None = None
    department_codes: frozenset[str] = field(default_factory=frozenset)
    ancestor_unit_ids: tuple[str, ...] = ()
    store_id: str | None = None
    position_id: str | None = None

    @classmethod
    def master(cls, user_id: str) -> UserContext:
        return cls(user_id=user_id, role=Role.MASTER, department_codes=frozenset({WILDCARD_DEPARTMENT}))

    @property
    def is_master(self) -> bool:
        return self.role == Role.MASTER

    @property
    def has_all_departments(self) -> bool:
        return WILDCARD_DEPARTMENT in self.department_codes

    def has_department(self, code: str) -> bool:
        return self.has_all_departments or code in self.department_codes

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "organization_id": self.organization_id,
            "unit_id": self.unit_id,
            "unit_type": self.unit_type.value if self.unit_type is not None else None,
            "department_codes": sorted(self.department_codes),
            "ancestor_unit_ids": list(self.ancestor_unit_ids),
            "store_id": self.store_id,
            "position_id": self.position_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UserContext:
        unit_type = payload.get("unit_type")
        return cls(
            user_id=str(payload["user_id"]),
            role=Role(payload["role"]),
            organization_id=payload.get("organization_id"),
            unit_id=payload.get("unit_id"),
            unit_type=OrgUnitType(unit_type) if unit_type else None,
            department_codes=frozenset(payload.get("department_codes") or ()),
            ancestor_unit_ids=tuple(payload.get("ancestor_unit_ids") or ()),
            store_id=payload.get("store_id"),
            position_id=payload.get("position_id"),
        )
