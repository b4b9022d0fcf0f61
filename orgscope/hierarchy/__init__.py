from orgscope.hierarchy.models import Department, Organization, OrgUnit, Position, PositionDepartment, Task, User
from orgscope.hierarchy.roles import DepartmentType, OrgUnitType, Role, TaskStatus, UserStatus

__all__ = [
    "Organization",
    "OrgUnit",
    "User",
    "Position",
    "Department",
    "PositionDepartment",
    "Task",
    "Role",
    "OrgUnitType",
    "DepartmentType",
    "UserStatus",
    "TaskStatus",
]
