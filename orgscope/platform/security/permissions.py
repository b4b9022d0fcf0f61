from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum

from orgscope import audit
from orgscope.hierarchy.dependencies import DependencyInspector
from orgscope.hierarchy.roles import OPERATIONAL_DEPARTMENTS, DepartmentType, Role
from orgscope.hierarchy.tree import OrgTreeIndex
from orgscope.metrics import observe_permission_denied
from orgscope.platform.security.context import UserContext
from orgscope.platform.security.errors import AuthorizationDeniedError, DependentsExistError


logger = logging.getLogger("orgscope.permissions")


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"


class DependentKind(StrEnum):
    USER = "user"
    STORE = "store"
    UNIT = "unit"
    ORGANIZATION = "organization"


SELF_SERVICE_FIELDS = frozenset({"name", "phone", "password"})
PRIVILEGED_USER_FIELDS = frozenset(
    {"hierarchy_role", "role", "status", "organization_id", "organization_unit_id", "store_id"}
)


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> Decision:
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


class PermissionEvaluator:
    """Allow/deny decisions for user-management and org-unit mutations.

    User rules, first match wins: self-service limits, MASTER, strict level
    ordering, then the per-role organization constraints. Unit rules: MASTER
    always, GO inside its own organization, GR only for manager assignment
    inside its own region, STORE_MANAGER never.
    """

    def __init__(self, tree: OrgTreeIndex, dependencies: DependencyInspector | None = None) -> None:
        self._tree = tree
        self._dependencies = dependencies or DependencyInspector()

    def evaluate(
        self,
        actor: UserContext,
        target: UserContext,
        op: Operation,
        *,
        fields: Iterable[str] | None = None,
    ) -> Decision:
        decision = self._evaluate_user_rules(actor, target, op, frozenset(fields or ()))
        if not decision.allowed:
            self._emit_denied(actor, op, decision.reason or "", entity_type="user", entity_id=target.user_id)
        return decision

    def can_operate(
        self,
        actor: UserContext,
        target: UserContext,
        op: Operation,
        *,
        fields: Iterable[str] | None = None,
    ) -> bool:
        return self.evaluate(actor, target, op, fields=fields).allowed

    def require(
        self,
        actor: UserContext,
        target: UserContext,
        op: Operation,
        *,
        fields: Iterable[str] | None = None,
    ) -> None:
        decision = self.evaluate(actor, target, op, fields=fields)
        if not decision.allowed:
            raise AuthorizationDeniedError(decision.reason or "operation not permitted")

    def evaluate_unit(self, actor: UserContext, unit_id: str | None, op: Operation) -> Decision:
        """Decide a unit mutation.

        For ``CREATE`` the unit is the parent the new unit goes under; ``None``
        means a new organization root.
        """

        decision = self._evaluate_unit_rules(actor, unit_id, op)
        if not decision.allowed:
            self._emit_denied(actor, op, decision.reason or "", entity_type="org_unit", entity_id=unit_id)
        return decision

    def can_operate_on_unit(self, actor: UserContext, unit_id: str | None, op: Operation) -> bool:
        return self.evaluate_unit(actor, unit_id, op).allowed

    def require_unit(self, actor: UserContext, unit_id: str | None, op: Operation) -> None:
        decision = self.evaluate_unit(actor, unit_id, op)
        if not decision.allowed:
            raise AuthorizationDeniedError(decision.reason or "operation not permitted")

    def check_dependencies(self, kind: DependentKind, entity_id: str) -> Decision:
        counts = self._count_dependents(kind, entity_id)
        if any(count > 0 for count in counts.values()):
            return Decision.deny(DependentsExistError(kind.value, counts).reason)
        return Decision.allow()

    def require_no_dependents(self, kind: DependentKind, entity_id: str) -> None:
        counts = self._count_dependents(kind, entity_id)
        if any(count > 0 for count in counts.values()):
            error = DependentsExistError(kind.value, counts)
            logger.info("permission.dependents_exist", extra={"resource": kind.value, "reason": error.reason})
            raise error

    @staticmethod
    def can_delegate_department(delegator: Role, delegatee: Role, department: DepartmentType | str) -> bool:
        if not delegator.outranks(delegatee):
            return False
        if delegator in (Role.MASTER, Role.GO):
            return True
        if delegator == Role.GR and delegatee == Role.STORE_MANAGER:
            return department in OPERATIONAL_DEPARTMENTS
        return False

    def _evaluate_user_rules(
        self,
        actor: UserContext,
        target: UserContext,
        op: Operation,
        fields: frozenset[str],
    ) -> Decision:
        if actor.user_id == target.user_id:
            return self._evaluate_self_service(op, fields)

        if actor.is_master:
            return Decision.allow()

        if actor.role.level <= target.role.level:
            return Decision.deny("target role at or above actor level")

        if "organization_id" in fields:
            return Decision.deny("only MASTER may change organization assignments")

        if actor.role == Role.GO:
            if actor.organization_id is None or target.organization_id != actor.organization_id:
                return Decision.deny("target user is outside the actor's organization")
            return Decision.allow()

        if actor.role == Role.GR:
            if actor.organization_id is None or target.organization_id != actor.organization_id:
                return Decision.deny("target user is outside the actor's organization")
            if target.role != Role.STORE_MANAGER:
                return Decision.deny("regional managers may only manage store managers")
            return Decision.allow()

        return Decision.deny("store managers cannot manage other users")

    @staticmethod
    def _evaluate_self_service(op: Operation, fields: frozenset[str]) -> Decision:
        if op == Operation.DELETE:
            return Decision.deny("cannot delete your own account")
        if op != Operation.UPDATE:
            return Decision.deny(f"cannot {op.value} your own account")
        if fields & PRIVILEGED_USER_FIELDS:
            return Decision.deny("cannot change role, status or organization on your own account")
        if fields - SELF_SERVICE_FIELDS:
            return Decision.deny("self-service updates are limited to name, phone and password")
        return Decision.allow()

    def _evaluate_unit_rules(self, actor: UserContext, unit_id: str | None, op: Operation) -> Decision:
        if actor.is_master:
            return Decision.allow()

        if actor.role == Role.STORE_MANAGER:
            return Decision.deny("store managers cannot modify organizational units")

        if unit_id is None:
            return Decision.deny("only MASTER may create organizations")

        if actor.role == Role.GO:
            if actor.organization_id is None:
                return Decision.deny("actor has no organization")
            unit = self._tree.get(unit_id)
            if unit.organization_id != actor.organization_id:
                return Decision.deny("unit belongs to another organization")
            return Decision.allow()

        if actor.role == Role.GR:
            if op != Operation.ASSIGN:
                return Decision.deny("regional managers may only assign store managers")
            if actor.unit_id is None or actor.organization_id is None:
                return Decision.deny("actor has no active region")
            unit = self._tree.get(unit_id)
            if unit.organization_id != actor.organization_id or not self._tree.is_within(actor.unit_id, unit_id):
                return Decision.deny("unit is outside the actor's region")
            return Decision.allow()

        return Decision.deny("operation not permitted")

    def _count_dependents(self, kind: DependentKind, entity_id: str) -> dict[str, int]:
        counters: dict[DependentKind, Callable[[str], dict[str, int]]] = {
            DependentKind.USER: self._dependencies.user_dependents,
            DependentKind.STORE: self._dependencies.unit_dependents,
            DependentKind.UNIT: self._dependencies.unit_dependents,
            DependentKind.ORGANIZATION: self._dependencies.organization_dependents,
        }
        return counters[kind](entity_id)

    @staticmethod
    def _emit_denied(
        actor: UserContext,
        op: Operation,
        reason: str,
        *,
        entity_type: str,
        entity_id: str | None,
    ) -> None:
        observe_permission_denied(operation=op.value, role=actor.role.value)
        logger.info(
            "permission.denied",
            extra={"user_id": actor.user_id, "role": actor.role.value, "operation": op.value, "reason": reason},
        )
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="security.permission",
            entity_id=entity_id or "organization",
            action="permission.denied",
            before=None,
            after={
                "target_type": entity_type,
                "operation": op.value,
                "actor_role": actor.role.value,
                "reason": reason,
            },
        )
