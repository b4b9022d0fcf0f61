from __future__ import annotations

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from orgscope.context import reset_actor_user_id, reset_correlation_id, set_actor_user_id, set_correlation_id


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        actor_token = set_actor_user_id(request.headers.get("x-user-id"))
        try:
            response = await call_next(request)
        finally:
            reset_actor_user_id(actor_token)
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
