from __future__ import annotations

from fastapi import FastAPI

from orgscope import __version__
from orgscope.api.errors import register_exception_handlers
from orgscope.api.routes import health, metrics, router
from orgscope.core.config import get_settings
from orgscope.logging import configure_logging
from orgscope.middleware.correlation_id import CorrelationIdMiddleware
from orgscope.middleware.request_logging import RequestLoggingMiddleware


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()

    app = FastAPI(title=settings.app_name, version=__version__)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app)

    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], tags=["system"])
    if settings.metrics_enabled:
        app.add_api_route("/metrics", metrics, methods=["GET"], tags=["system"])
    return app
