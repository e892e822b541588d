from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from dashsync.apps.api.errors import (
    http_exception_handler,
    sync_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from dashsync.apps.api.response import API_VERSION
from dashsync.apps.api.routes.health import router as health_router
from dashsync.apps.api.routes.ops import router as ops_router
from dashsync.core.config import get_settings
from dashsync.core.errors import SyncError
from dashsync.core.logging import configure_logging
from dashsync.services.sync_context import SyncContext


def create_app(context: SyncContext | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await app.state.sync_context.start()
        try:
            yield
        finally:
            await app.state.sync_context.aclose()

    app = FastAPI(title=f"{settings.app_name} ops API", lifespan=lifespan)
    app.state.sync_context = context or SyncContext.from_settings(settings)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app
