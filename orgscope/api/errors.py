from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from orgscope.context import get_correlation_id
from orgscope.platform.security.errors import (
    AuthorizationDeniedError,
    ConflictError,
    CyclicHierarchyError,
    DependentsExistError,
    InvalidHierarchyError,
    NoActivePositionError,
    NotFoundError,
    OrgScopeError,
)


logger = logging.getLogger("orgscope.api")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code="not_found", message=str(exc))


async def _no_active_position(request: Request, exc: NoActivePositionError) -> JSONResponse:
    return error_response(request, status_code=status.HTTP_403_FORBIDDEN, code="no_active_position", message=exc.reason)


async def _authorization_denied(request: Request, exc: AuthorizationDeniedError) -> JSONResponse:
    return error_response(request, status_code=status.HTTP_403_FORBIDDEN, code="forbidden", message=exc.reason)


async def _dependents_exist(request: Request, exc: DependentsExistError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_409_CONFLICT,
        code="dependents_exist",
        message=exc.reason,
        details={"dependents": exc.dependents},
    )


async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
    return error_response(request, status_code=status.HTTP_409_CONFLICT, code="conflict", message=exc.reason)


async def _invalid_hierarchy(request: Request, exc: InvalidHierarchyError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="invalid_hierarchy",
        message=exc.reason,
    )


async def _cyclic_hierarchy(request: Request, exc: CyclicHierarchyError) -> JSONResponse:
    logger.error("http.cyclic_hierarchy", extra={"unit_id": exc.unit_id, "cycle": exc.path})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="cyclic_hierarchy",
        message=str(exc),
    )


async def _orgscope_error(request: Request, exc: OrgScopeError) -> JSONResponse:
    logger.error("http.unhandled_orgscope_error", extra={"error": str(exc)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="internal_error",
        message="internal error",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(NotFoundError, _not_found)  # type: ignore[arg-type]
    app.add_exception_handler(NoActivePositionError, _no_active_position)  # type: ignore[arg-type]
    app.add_exception_handler(DependentsExistError, _dependents_exist)  # type: ignore[arg-type]
    app.add_exception_handler(AuthorizationDeniedError, _authorization_denied)  # type: ignore[arg-type]
    app.add_exception_handler(ConflictError, _conflict)  # type: ignore[arg-type]
    app.add_exception_handler(InvalidHierarchyError, _invalid_hierarchy)  # type: ignore[arg-type]
    app.add_exception_handler(CyclicHierarchyError, _cyclic_hierarchy)  # type: ignore[arg-type]
    app.add_exception_handler(OrgScopeError, _orgscope_error)  # type: ignore[arg-type]
