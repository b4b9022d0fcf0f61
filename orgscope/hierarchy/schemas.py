from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from orgscope.hierarchy.roles import OrgUnitType, Role, TaskStatus, UserStatus


# DELETED is reached only through the delete endpoint, which checks dependents.
AssignableUserStatus = Literal["ACTIVE", "INACTIVE", "SUSPENDED"]


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=1, max_length=64)


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    code: str
    active: bool
    created_at: datetime


class OrgUnitCreate(BaseModel):
    organization_id: str
    parent_id: str | None = None
    type: OrgUnitType
    name: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=1, max_length=64)
    manager_id: str | None = None


class OrgUnitRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    parent_id: str | None
    type: OrgUnitType
    name: str
    code: str
    manager_id: str | None
    active: bool
    created_at: datetime


class OrgUnitPage(BaseModel):
    items: list[OrgUnitRead]
    total: int
    page: int
    per_page: int


class OrgUnitMove(BaseModel):
    parent_id: str


class ManagerAssign(BaseModel):
    manager_id: str | None = None


class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    hierarchy_role: Role | None = None
    status: AssignableUserStatus | None = None
    organization_id: str | None = None
    organization_unit_id: str | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    phone: str | None
    hierarchy_role: Role
    status: UserStatus
    organization_id: str | None
    organization_unit_id: str | None
    created_at: datetime
    updated_at: datetime


class UserPage(BaseModel):
    items: list[UserRead]
    total: int
    page: int
    per_page: int


class PositionAssign(BaseModel):
    organization_unit_id: str
    department_codes: list[str] = Field(default_factory=list)


class PositionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    organization_id: str
    organization_unit_id: str
    level: Role
    active: bool
    created_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    organization_unit_id: str
    department_code: str | None = None
    assigned_to: str | None = None


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    organization_unit_id: str | None
    department_code: str | None
    title: str
    status: TaskStatus
    created_by: str
    assigned_to: str | None
    created_at: datetime


class TaskPage(BaseModel):
    items: list[TaskRead]
    total: int
    page: int
    per_page: int
