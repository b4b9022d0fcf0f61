from orgscope.platform.security.context import WILDCARD_DEPARTMENT, UserContext
from orgscope.platform.security.errors import (
    AuthorizationDeniedError,
    ConflictError,
    CyclicHierarchyError,
    DependentsExistError,
    InvalidHierarchyError,
    NoActivePositionError,
    NotFoundError,
    OrgScopeError,
    UserNotFoundError,
)

__all__ = [
    "UserContext",
    "WILDCARD_DEPARTMENT",
    "OrgScopeError",
    "NotFoundError",
    "UserNotFoundError",
    "AuthorizationDeniedError",
    "NoActivePositionError",
    "DependentsExistError",
    "CyclicHierarchyError",
    "InvalidHierarchyError",
    "ConflictError",
]
