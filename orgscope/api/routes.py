from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from orgscope.api.dependencies import get_current_user_id, get_hierarchy_service, require_user_context
from orgscope.core.config import get_settings
from orgscope.core.database import get_db
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
from orgscope.hierarchy.service import HierarchyService
from orgscope.metrics import generate_metrics_payload, metrics_content_type
from orgscope.platform.security.context import UserContext


router = APIRouter(prefix="/api/hierarchy", tags=["hierarchy"])

SortDirection = Literal["asc", "desc"]


def health() -> dict[str, str]:
    settings = get_settings()
    return {"status": "ok", "service": settings.app_name, "environment": settings.app_env}


def metrics() -> Response:
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


@router.get("/me/context")
def my_context(ctx: UserContext = Depends(require_user_context)) -> dict[str, Any]:
    return ctx.as_dict()


@router.get("/stores", response_model=OrgUnitPage)
def list_stores(
    organization_id: str | None = None,
    parent_id: str | None = None,
    active: bool | None = None,
    search: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    sort_by: Literal["name", "code", "created_at"] | None = None,
    sort_direction: SortDirection | None = None,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> OrgUnitPage:
    return service.list_stores(
        session,
        user_id,
        filters={"organization_id": organization_id, "parent_id": parent_id, "active": active, "search": search},
        page=page,
        per_page=per_page,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )


@router.get("/users", response_model=UserPage)
def list_users(
    organization_id: str | None = None,
    organization_unit_id: str | None = None,
    hierarchy_role: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    sort_by: Literal["name", "email", "created_at"] | None = None,
    sort_direction: SortDirection | None = None,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> UserPage:
    return service.list_users(
        session,
        user_id,
        filters={
            "organization_id": organization_id,
            "organization_unit_id": organization_unit_id,
            "hierarchy_role": hierarchy_role,
            "status": status_filter,
            "search": search,
        },
        page=page,
        per_page=per_page,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )


@router.post("/organizations", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(
    dto: OrganizationCreate,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> OrganizationRead:
    return service.create_organization(session, user_id, dto)


@router.delete("/organizations/{organization_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_organization(
    organization_id: str,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> Response:
    service.delete_organization(session, user_id, organization_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/units", response_model=OrgUnitRead, status_code=status.HTTP_201_CREATED)
def create_unit(
    dto: OrgUnitCreate,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> OrgUnitRead:
    return service.create_unit(session, user_id, dto)


@router.put("/units/{unit_id}/parent", response_model=OrgUnitRead)
def move_unit(
    unit_id: str,
    dto: OrgUnitMove,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> OrgUnitRead:
    return service.move_unit(session, user_id, unit_id, dto)


@router.put("/units/{unit_id}/manager", response_model=OrgUnitRead)
def assign_manager(
    unit_id: str,
    dto: ManagerAssign,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> OrgUnitRead:
    return service.assign_manager(session, user_id, unit_id, dto)


@router.delete("/stores/{unit_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_store(
    unit_id: str,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> Response:
    service.delete_store(session, user_id, unit_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/users/{target_user_id}", response_model=UserRead)
def update_user(
    target_user_id: str,
    dto: UserUpdate,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> UserRead:
    return service.update_user(session, user_id, target_user_id, dto)


@router.delete("/users/{target_user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    target_user_id: str,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> Response:
    service.delete_user(session, user_id, target_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users/{target_user_id}/positions", response_model=PositionRead, status_code=status.HTTP_201_CREATED)
def assign_position(
    target_user_id: str,
    dto: PositionAssign,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> PositionRead:
    return service.assign_position(session, user_id, target_user_id, dto)


@router.get("/tasks", response_model=TaskPage)
def list_tasks(
    organization_unit_id: str | None = None,
    department_code: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = None,
    search: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    sort_by: Literal["title", "status", "created_at"] | None = None,
    sort_direction: SortDirection | None = None,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> TaskPage:
    return service.list_tasks(
        session,
        user_id,
        filters={
            "organization_unit_id": organization_unit_id,
            "department_code": department_code,
            "status": status_filter,
            "assigned_to": assigned_to,
            "search": search,
        },
        page=page,
        per_page=per_page,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )


@router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    dto: TaskCreate,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> TaskRead:
    return service.create_task(session, user_id, dto)


@router.patch("/tasks/{task_id}/status", response_model=TaskRead)
def update_task_status(
    task_id: str,
    dto: TaskStatusUpdate,
    session: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: HierarchyService = Depends(get_hierarchy_service),
) -> TaskRead:
    return service.update_task_status(session, user_id, task_id, dto)
