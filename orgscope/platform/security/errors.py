from __future__ import annotations

from collections.abc import Mapping, Sequence


class OrgScopeError(Exception):
    """Base class for errors raised by the hierarchy/authorization core."""


class NotFoundError(OrgScopeError):
    """Raised when a unit, user or department is absent."""

    def __init__(self, entity: str, entity_id: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str | None = None) -> None:
        super().__init__("user", user_id)


class AuthorizationDeniedError(OrgScopeError):
    """Raised when a permission or scope check fails.

    ``reason`` is safe to show the caller and to write to the audit trail; it
    never embeds identifiers of entities the actor cannot see.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class NoActivePositionError(AuthorizationDeniedError):
    def __init__(self, reason: str = "user has no active position in any organization") -> None:
        super().__init__(reason)


class DependentsExistError(AuthorizationDeniedError):
    """Raised when a destructive operation finds active dependents."""

    def __init__(self, entity: str, dependents: Mapping[str, int]) -> None:
        self.entity = entity
        self.dependents = {name: count for name, count in dependents.items() if count > 0}
        summary = ", ".join(f"{count} {name}" for name, count in sorted(self.dependents.items()))
        super().__init__(f"Cannot delete {entity}: it still has {summary}")


class CyclicHierarchyError(OrgScopeError):
    """Raised when org-unit parent links loop back on themselves."""

    def __init__(self, unit_id: str, path: Sequence[str] = ()) -> None:
        self.unit_id = unit_id
        self.path = list(path)
        super().__init__("Cyclic org-unit hierarchy detected")


class InvalidHierarchyError(OrgScopeError):
    """Raised when a unit placement violates the company/regional/store layering."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ConflictError(OrgScopeError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
