from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from orgscope.core.database import SessionLocal
from orgscope.hierarchy.models import OrgUnit, Position, Task
from orgscope.hierarchy.roles import TERMINAL_TASK_STATUSES, OrgUnitType


_TERMINAL_STATUS_VALUES = sorted(status.value for status in TERMINAL_TASK_STATUSES)


class DependencyInspector:
    """Counts live dependents that block destructive operations.

    The counts are a point-in-time precondition; nothing is locked between the
    check and the caller's delete.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def user_dependents(self, user_id: str) -> dict[str, int]:
        with self._session_factory() as session:
            managed_stores = session.scalar(
                select(func.count())
                .select_from(OrgUnit)
                .where(OrgUnit.manager_id == user_id, OrgUnit.active.is_(True))
            )
            open_tasks = session.scalar(
                select(func.count())
                .select_from(Task)
                .where(
                    or_(Task.created_by == user_id, Task.assigned_to == user_id),
                    Task.status.not_in(_TERMINAL_STATUS_VALUES),
                )
            )
        return {"managed stores": int(managed_stores or 0), "active tasks": int(open_tasks or 0)}

    def unit_dependents(self, unit_id: str) -> dict[str, int]:
        with self._session_factory() as session:
            child_units = session.scalar(
                select(func.count())
                .select_from(OrgUnit)
                .where(OrgUnit.parent_id == unit_id, OrgUnit.active.is_(True))
            )
            positions = session.scalar(
                select(func.count())
                .select_from(Position)
                .where(Position.organization_unit_id == unit_id, Position.active.is_(True))
            )
            open_tasks = session.scalar(
                select(func.count())
                .select_from(Task)
                .where(Task.organization_unit_id == unit_id, Task.status.not_in(_TERMINAL_STATUS_VALUES))
            )
        return {
            "child units": int(child_units or 0),
            "assigned users": int(positions or 0),
            "active tasks": int(open_tasks or 0),
        }

    def organization_dependents(self, organization_id: str) -> dict[str, int]:
        with self._session_factory() as session:
            units = session.scalar(
                select(func.count())
                .select_from(OrgUnit)
                .where(
                    OrgUnit.organization_id == organization_id,
                    OrgUnit.type != OrgUnitType.COMPANY.value,
                    OrgUnit.active.is_(True),
                )
            )
            positions = session.scalar(
                select(func.count())
                .select_from(Position)
                .where(Position.organization_id == organization_id, Position.active.is_(True))
            )
        return {"units": int(units or 0), "assigned users": int(positions or 0)}
