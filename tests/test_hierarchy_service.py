from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from orgscope import audit
from orgscope.core.database import Base
from orgscope.hierarchy.dependencies import DependencyInspector
from orgscope.hierarchy.models import Department, Organization, OrgUnit, Position, PositionDepartment, Task, User
from orgscope.hierarchy.roles import OrgUnitType, Role, TaskStatus, UserStatus
from orgscope.hierarchy.schemas import (
    ManagerAssign,
    OrganizationCreate,
    OrgUnitCreate,
    OrgUnitMove,
    PositionAssign,
    TaskCreate,
    TaskStatusUpdate,
    UserUpdate,
)
from orgscope.hierarchy.service import HierarchyService
from orgscope.hierarchy.tree import DbOrgUnitSource, OrgTreeIndex
from orgscope.platform.cache.scoped import ScopedCache
from orgscope.platform.cache.store import InMemoryTaggedCacheStore
from orgscope.platform.security.errors import (
    AuthorizationDeniedError,
    ConflictError,
    CyclicHierarchyError,
    DependentsExistError,
    InvalidHierarchyError,
    NoActivePositionError,
    NotFoundError,
    UserNotFoundError,
)
from orgscope.platform.security.permissions import PermissionEvaluator
from orgscope.platform.security.provider import ContextProvider


_USERS = [
    ("root", "Root", "MASTER", None, None),
    ("go", "Grace", "GO", "org-1", "c1"),
    ("gr", "Gina", "GR", "org-1", "r1"),
    ("gr2", "Gus", "GR", "org-1", "r2"),
    ("sm", "Sam", "STORE_MANAGER", "org-1", "s1"),
    ("sm2", "Sky", "STORE_MANAGER", "org-1", "s2"),
    ("go2", "Olga", "GO", "org-2", "c2"),
    ("sm9", "Nine", "STORE_MANAGER", "org-2", "s9"),
]


@pytest.fixture(autouse=True)
def clear_audit() -> Generator[None, None, None]:
    audit.clear()
    yield
    audit.clear()


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as session:
        session.add_all(
            [
                Organization(id="org-1", name="Acme", code="ACME"),
                Organization(id="org-2", name="Other", code="OTHER"),
            ]
        )
        session.flush()
        session.add_all(
            [
                OrgUnit(id="c1", organization_id="org-1", type="company", name="Acme", code="ACME"),
                OrgUnit(id="r1", organization_id="org-1", parent_id="c1", type="regional", name="North", code="N"),
                OrgUnit(id="r2", organization_id="org-1", parent_id="c1", type="regional", name="South", code="S"),
                OrgUnit(id="s1", organization_id="org-1", parent_id="r1", type="store", name="S1", code="S1"),
                OrgUnit(id="s2", organization_id="org-1", parent_id="r2", type="store", name="S2", code="S2"),
                OrgUnit(id="c2", organization_id="org-2", type="company", name="Other", code="OTHER"),
                OrgUnit(id="r9", organization_id="org-2", parent_id="c2", type="regional", name="R9", code="R9"),
                OrgUnit(id="s9", organization_id="org-2", parent_id="r9", type="store", name="S9", code="S9"),
            ]
        )
        session.add_all(
            [
                Department(id="d-ops", organization_id="org-1", name="Operations", code="OPS", type="operations"),
                Department(id="d-fin", organization_id="org-1", name="Finance", code="FIN", type="financial"),
            ]
        )
        for user_id, name, role, organization_id, unit_id in _USERS:
            session.add(
                User(
                    id=user_id,
                    name=name,
                    email=f"{user_id}@example.com",
                    hierarchy_role=role,
                    organization_id=organization_id,
                    organization_unit_id=unit_id,
                )
            )
        session.flush()
        for user_id, _, role, organization_id, unit_id in _USERS:
            if unit_id is None:
                continue
            session.add(
                Position(
                    id=f"p-{user_id}",
                    user_id=user_id,
                    organization_id=organization_id,
                    organization_unit_id=unit_id,
                    level=role,
                )
            )
        session.commit()

    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def service(session_factory: sessionmaker[Session]) -> HierarchyService:
    store = InMemoryTaggedCacheStore()
    tree = OrgTreeIndex(DbOrgUnitSource(session_factory))
    return HierarchyService(
        tree=tree,
        provider=ContextProvider(store, session_factory=session_factory, tree=tree),
        cache=ScopedCache(store),
        permissions=PermissionEvaluator(tree, DependencyInspector(session_factory)),
    )


def _store_ids(service: HierarchyService, session: Session, user_id: str) -> list[str]:
    return [item.id for item in service.list_stores(session, user_id).items]


def test_store_listing_is_scoped_per_role(service: HierarchyService, session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        assert _store_ids(service, session, "root") == ["s1", "s2", "s9"]
        assert _store_ids(service, session, "go") == ["s1", "s2"]
        assert _store_ids(service, session, "gr") == ["s1"]
        assert _store_ids(service, session, "sm2") == ["s2"]
        assert _store_ids(service, session, "go2") == ["s9"]


def test_user_listing_for_regional_manager_covers_its_subtree(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        page = service.list_users(session, "gr")
        assert [item.id for item in page.items] == ["gr", "sm"]
        assert page.total == 2

        go_page = service.list_users(session, "go", filters={"hierarchy_role": "STORE_MANAGER"})
        assert {item.id for item in go_page.items} == {"sm", "sm2"}


def test_listing_is_cached_until_a_write_invalidates_it(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        assert _store_ids(service, session, "gr") == ["s1"]

    with session_factory() as session:
        session.add(OrgUnit(id="s3", organization_id="org-1", parent_id="r1", type="store", name="S3", code="S3"))
        session.commit()

    with session_factory() as session:
        assert _store_ids(service, session, "gr") == ["s1"]

        created = service.create_unit(
            session,
            "go",
            OrgUnitCreate(organization_id="org-1", parent_id="r1", type=OrgUnitType.STORE, name="S4", code="s4"),
        )
        assert created.code == "S4"

    with session_factory() as session:
        assert _store_ids(service, session, "gr") == ["s1", "s3", created.id]


def test_moving_a_user_between_organizations_refreshes_both_listings(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        assert "sm" in {item.id for item in service.list_users(session, "go").items}
        assert "sm" not in {item.id for item in service.list_users(session, "go2").items}

        updated = service.update_user(
            session,
            "root",
            "sm",
            UserUpdate(organization_id="org-2", organization_unit_id="s9"),
        )
        assert updated.organization_id == "org-2"

    with session_factory() as session:
        assert "sm" not in {item.id for item in service.list_users(session, "go").items}
        assert "sm" in {item.id for item in service.list_users(session, "go2").items}


def test_master_creates_and_deletes_an_empty_organization(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        created = service.create_organization(session, "root", OrganizationCreate(name="New Co", code="newco"))
        assert created.code == "NEWCO"
        root_unit = session.scalars(select(OrgUnit).where(OrgUnit.organization_id == created.id)).one()
        assert root_unit.type == OrgUnitType.COMPANY.value

        service.delete_organization(session, "root", created.id)

    with session_factory() as session:
        assert session.get(Organization, created.id) is None
        assert session.scalars(select(OrgUnit).where(OrgUnit.organization_id == created.id)).all() == []

    actions = [(entry["entity_type"], entry["action"]) for entry in audit.audit_entries]
    assert ("hierarchy.organization", "create") in actions
    assert ("hierarchy.organization", "delete") in actions


def test_organization_rules(service: HierarchyService, session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        with pytest.raises(AuthorizationDeniedError):
            service.create_organization(session, "go", OrganizationCreate(name="Mine", code="MINE"))
        with pytest.raises(ConflictError):
            service.create_organization(session, "root", OrganizationCreate(name="Dup", code="acme"))
        with pytest.raises(DependentsExistError) as exc_info:
            service.delete_organization(session, "root", "org-2")
        assert exc_info.value.dependents == {"units": 2, "assigned users": 2}
        with pytest.raises(NotFoundError):
            service.delete_organization(session, "root", "org-missing")


def test_unit_creation_rules(service: HierarchyService, session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        region = service.create_unit(
            session,
            "go",
            OrgUnitCreate(organization_id="org-1", parent_id="c1", type=OrgUnitType.REGIONAL, name="East", code="e"),
        )
        assert region.parent_id == "c1"

        with pytest.raises(AuthorizationDeniedError):
            service.create_unit(
                session,
                "gr",
                OrgUnitCreate(organization_id="org-1", parent_id="r1", type=OrgUnitType.STORE, name="X", code="X"),
            )
        with pytest.raises(AuthorizationDeniedError):
            service.create_unit(
                session,
                "go2",
                OrgUnitCreate(organization_id="org-1", parent_id="r1", type=OrgUnitType.STORE, name="X", code="X"),
            )
        with pytest.raises(InvalidHierarchyError):
            service.create_unit(
                session,
                "go",
                OrgUnitCreate(organization_id="org-1", parent_id="c1", type=OrgUnitType.STORE, name="X", code="X"),
            )
        with pytest.raises(ConflictError):
            service.create_unit(
                session,
                "go",
                OrgUnitCreate(organization_id="org-1", parent_id="r1", type=OrgUnitType.STORE, name="Dup", code="s1"),
            )


def test_regional_manager_assigns_store_managers_inside_its_region(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        unit = service.assign_manager(session, "gr", "s1", ManagerAssign(manager_id="sm"))
        assert unit.manager_id == "sm"

        with pytest.raises(AuthorizationDeniedError):
            service.assign_manager(session, "gr", "s2", ManagerAssign(manager_id="sm2"))
        with pytest.raises(InvalidHierarchyError):
            service.assign_manager(session, "go", "r1", ManagerAssign(manager_id="gr"))
        with pytest.raises(InvalidHierarchyError):
            service.assign_manager(session, "root", "s1", ManagerAssign(manager_id="sm9"))


def test_store_deletion_is_blocked_by_assigned_users(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        with pytest.raises(DependentsExistError) as exc_info:
            service.delete_store(session, "go", "s2")
        assert exc_info.value.reason == "Cannot delete store: it still has 1 assigned users"

        with pytest.raises(AuthorizationDeniedError):
            service.delete_store(session, "sm", "s1")

        empty = service.create_unit(
            session,
            "go",
            OrgUnitCreate(organization_id="org-1", parent_id="r2", type=OrgUnitType.STORE, name="Empty", code="E1"),
        )
        assert empty.id in _store_ids(service, session, "go")

        service.delete_store(session, "go", empty.id)

    with session_factory() as session:
        assert empty.id not in _store_ids(service, session, "go")
        with pytest.raises(InvalidHierarchyError):
            service.delete_store(session, "go", "r2")


def test_user_update_rules(service: HierarchyService, session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        renamed = service.update_user(session, "go", "sm", UserUpdate(name="Samuel"))
        assert renamed.name == "Samuel"

        own = service.update_user(session, "sm", "sm", UserUpdate(phone="555-0100"))
        assert own.phone == "555-0100"

        with pytest.raises(AuthorizationDeniedError):
            service.update_user(session, "sm", "sm", UserUpdate(hierarchy_role=Role.GR))
        with pytest.raises(AuthorizationDeniedError):
            service.update_user(session, "gr", "sm", UserUpdate(hierarchy_role=Role.GR))
        with pytest.raises(AuthorizationDeniedError):
            service.update_user(session, "go", "sm", UserUpdate(organization_id="org-2"))
        with pytest.raises(AuthorizationDeniedError):
            service.update_user(session, "gr", "gr2", UserUpdate(name="Peer"))
        with pytest.raises(InvalidHierarchyError):
            service.update_user(session, "root", "sm", UserUpdate(organization_unit_id="s9"))

    updates = [entry for entry in audit.audit_entries if entry["entity_type"] == "hierarchy.user"]
    assert updates[0]["before"] == {"name": "Sam"}
    assert updates[0]["after"] == {"name": "Samuel"}


def test_role_change_is_visible_to_the_next_context_lookup(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    assert service.provider.get_context("gr2").role == Role.GR

    with session_factory() as session:
        service.update_user(session, "go", "gr2", UserUpdate(hierarchy_role=Role.STORE_MANAGER))

    assert service.provider.get_context("gr2").role == Role.STORE_MANAGER


def test_soft_delete_hides_user_and_closes_positions(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    assert service.provider.get_context("sm2").unit_id == "s2"

    with session_factory() as session:
        service.delete_user(session, "go", "sm2")

    with session_factory() as session:
        user = session.get(User, "sm2")
        assert user is not None
        assert user.status == UserStatus.DELETED.value
        assert session.get(Position, "p-sm2").active is False
        assert "sm2" not in {item.id for item in service.list_users(session, "go").items}

    with pytest.raises(UserNotFoundError):
        service.provider.get_context("sm2")


def test_user_deletion_is_blocked_while_managing_a_store(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        service.assign_manager(session, "go", "s1", ManagerAssign(manager_id="sm"))

        with pytest.raises(DependentsExistError) as exc_info:
            service.delete_user(session, "go", "sm")
        assert exc_info.value.dependents == {"managed stores": 1}

        with pytest.raises(AuthorizationDeniedError):
            service.delete_user(session, "go", "go")


def test_assign_position_replaces_the_previous_position(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        position = service.assign_position(
            session,
            "go",
            "sm2",
            PositionAssign(organization_unit_id="s1", department_codes=["OPS"]),
        )
        assert position.organization_unit_id == "s1"
        assert position.level == Role.STORE_MANAGER

    with session_factory() as session:
        assert session.get(Position, "p-sm2").active is False
        active = session.scalars(select(Position).where(Position.user_id == "sm2", Position.active.is_(True))).all()
        assert [row.id for row in active] == [position.id]

    ctx = service.provider.get_context("sm2")
    assert ctx.unit_id == "s1"
    assert ctx.department_codes == frozenset({"OPS"})


def test_assign_position_rules(service: HierarchyService, session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        with pytest.raises(AuthorizationDeniedError):
            service.assign_position(
                session,
                "gr",
                "sm",
                PositionAssign(organization_unit_id="s1", department_codes=["FIN"]),
            )
        with pytest.raises(InvalidHierarchyError):
            service.assign_position(session, "go", "gr", PositionAssign(organization_unit_id="s1"))
        with pytest.raises(NotFoundError):
            service.assign_position(
                session,
                "go",
                "sm",
                PositionAssign(organization_unit_id="s1", department_codes=["NOPE"]),
            )

        position = service.assign_position(
            session,
            "gr",
            "sm",
            PositionAssign(organization_unit_id="s1", department_codes=["OPS"]),
        )
        assert position.user_id == "sm"


def test_moving_a_store_between_regions_updates_scopes_and_contexts(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    assert service.provider.get_context("sm").ancestor_unit_ids == ("r1", "c1")
    with session_factory() as session:
        assert _store_ids(service, session, "gr") == ["s1"]

        moved = service.move_unit(session, "go", "s1", OrgUnitMove(parent_id="r2"))
        assert moved.parent_id == "r2"

    with session_factory() as session:
        assert _store_ids(service, session, "gr") == []
        assert _store_ids(service, session, "gr2") == ["s1", "s2"]
    assert service.provider.get_context("sm").ancestor_unit_ids == ("r2", "c1")

    moves = [entry for entry in audit.audit_entries if entry["action"] == "move"]
    assert moves[0]["before"] == {"parent_id": "r1"}
    assert moves[0]["after"] == {"parent_id": "r2"}


def test_move_rules(service: HierarchyService, session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        with pytest.raises(AuthorizationDeniedError):
            service.move_unit(session, "gr", "s1", OrgUnitMove(parent_id="r1"))
        with pytest.raises(CyclicHierarchyError):
            service.move_unit(session, "go", "r1", OrgUnitMove(parent_id="s1"))
        with pytest.raises(InvalidHierarchyError):
            service.move_unit(session, "go", "s1", OrgUnitMove(parent_id="c1"))
        with pytest.raises(AuthorizationDeniedError):
            service.move_unit(session, "go", "s1", OrgUnitMove(parent_id="r9"))


def test_status_update_cannot_soft_delete_a_user(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with pytest.raises(ValidationError):
        UserUpdate(status="DELETED")

    with session_factory() as session:
        service.assign_manager(session, "go", "s1", ManagerAssign(manager_id="gr"))
        with pytest.raises(DependentsExistError):
            service.delete_user(session, "go", "gr")

        suspended = service.update_user(session, "go", "gr", UserUpdate(status="SUSPENDED"))
        assert suspended.status == UserStatus.SUSPENDED

    with session_factory() as session:
        assert session.get(Position, "p-gr").active is True
        assert session.get(OrgUnit, "s1").manager_id == "gr"
    with pytest.raises(NoActivePositionError):
        service.provider.get_context("gr")


def test_moving_a_user_to_another_organization_closes_old_positions(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    assert service.provider.get_context("go").organization_id == "org-1"

    with session_factory() as session:
        service.update_user(session, "root", "go", UserUpdate(organization_id="org-2", organization_unit_id="c2"))

    with session_factory() as session:
        assert session.get(Position, "p-go").active is False
        with pytest.raises(NoActivePositionError):
            service.list_stores(session, "go")

    target = service.provider.get_target_context("go")
    assert target.organization_id == "org-2"
    assert target.unit_id == "c2"
    closed = [record for record in caplog.records if record.getMessage() == "hierarchy.positions_closed"]
    assert getattr(closed[0], "position_count", None) == 1

    with session_factory() as session:
        service.assign_position(session, "root", "go", PositionAssign(organization_unit_id="c2"))
        assert _store_ids(service, session, "go") == ["s9"]


def test_resending_the_current_unit_keeps_the_active_position(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        service.update_user(session, "root", "sm", UserUpdate(organization_id="org-1", organization_unit_id="s1"))

    with session_factory() as session:
        assert session.get(Position, "p-sm").active is True
    assert service.provider.get_context("sm").unit_id == "s1"


def _grant_departments(session_factory: sessionmaker[Session], grants: dict[str, list[str]]) -> None:
    with session_factory() as session:
        for position_id, department_ids in grants.items():
            session.add_all(
                [PositionDepartment(position_id=position_id, department_id=department_id) for department_id in department_ids]
            )
        session.commit()


def test_task_listing_is_scoped_by_unit_and_department(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    _grant_departments(session_factory, {"p-go": ["d-ops", "d-fin"], "p-gr": ["d-ops"]})
    with session_factory() as session:
        session.add_all(
            [
                Task(id="t-ops-s1", organization_id="org-1", organization_unit_id="s1", department_code="OPS", title="A", created_by="go"),
                Task(id="t-fin-s1", organization_id="org-1", organization_unit_id="s1", department_code="FIN", title="B", created_by="go"),
                Task(id="t-ops-s2", organization_id="org-1", organization_unit_id="s2", department_code="OPS", title="C", created_by="go"),
                Task(id="t-org2", organization_id="org-2", organization_unit_id="s9", title="D", created_by="go2"),
            ]
        )
        session.commit()

    def task_ids(user_id: str) -> set[str]:
        with session_factory() as session:
            return {item.id for item in service.list_tasks(session, user_id).items}

    assert task_ids("root") == {"t-ops-s1", "t-fin-s1", "t-ops-s2", "t-org2"}
    assert task_ids("go") == {"t-ops-s1", "t-fin-s1", "t-ops-s2"}
    assert task_ids("gr") == {"t-ops-s1"}
    assert task_ids("sm") == set()


def test_task_writes_stay_in_scope_and_refresh_listings(
    service: HierarchyService,
    session_factory: sessionmaker[Session],
) -> None:
    _grant_departments(session_factory, {"p-gr": ["d-ops"]})

    with session_factory() as session:
        assert service.list_tasks(session, "gr").total == 0

        created = service.create_task(session, "gr", TaskCreate(title="Restock", organization_unit_id="s1"))
        assert created.department_code == "OPS"
        assert created.created_by == "gr"
        assert [item.id for item in service.list_tasks(session, "gr").items] == [created.id]

        with pytest.raises(AuthorizationDeniedError):
            service.create_task(session, "gr", TaskCreate(title="Elsewhere", organization_unit_id="s2"))
        with pytest.raises(AuthorizationDeniedError):
            service.create_task(session, "gr", TaskCreate(title="Books", organization_unit_id="s1", department_code="FIN"))
        with pytest.raises(NotFoundError):
            service.create_task(session, "root", TaskCreate(title="X", organization_unit_id="s1", department_code="NOPE"))
        with pytest.raises(InvalidHierarchyError):
            service.create_task(session, "root", TaskCreate(title="X", organization_unit_id="s1", assigned_to="sm9"))

        with pytest.raises(DependentsExistError) as exc_info:
            service.delete_user(session, "go", "gr")
        assert exc_info.value.dependents == {"active tasks": 1}

        done = service.update_task_status(session, "gr", created.id, TaskStatusUpdate(status=TaskStatus.DONE))
        assert done.status == TaskStatus.DONE
        assert service.list_tasks(session, "gr").items[0].status == TaskStatus.DONE

        with pytest.raises(NotFoundError):
            service.update_task_status(session, "sm", created.id, TaskStatusUpdate(status=TaskStatus.TODO))

    actions = [entry["action"] for entry in audit.audit_entries if entry["entity_type"] == "hierarchy.task"]
    assert actions == ["create", "update_status"]
