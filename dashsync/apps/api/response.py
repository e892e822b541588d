from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from dashsync.core.errors import BackendRejectionError, NetworkError, SyncError


API_VERSION = "v1"

T = TypeVar("T")


class SyncMeta(BaseModel):
    """Envelope metadata: which request, and which backend state the payload reflects."""

    request_id: str
    api_version: str = Field(default=API_VERSION)
    backend: str | None = None
    # Sync-context clock when the payload was read; cache timestamps share this clock.
    served_at: float | None = None


class SyncErrorBody(BaseModel):
    code: str
    message: str
    # Clients may retry transient backend failures; rejections need a different request.
    retryable: bool = False
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: SyncMeta


class ErrorEnvelope(BaseModel):
    error: SyncErrorBody
    meta: SyncMeta


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def build_meta(request: Request) -> SyncMeta:
    context = getattr(request.app.state, "sync_context", None)
    if context is None:
        return SyncMeta(request_id=request_id_for(request))
    return SyncMeta(
        request_id=request_id_for(request),
        backend=context.backend.name,
        served_at=context.now(),
    )


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _plain(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump()
    if isinstance(data, list):
        return [_plain(item) for item in data]
    return data


def success_response(*, request: Request, data: Any) -> Any:
    # Versioned routes get the envelope; unversioned ones return the raw payload.
    payload = _plain(data)
    if not is_versioned_request(request):
        return payload
    return {"data": payload, "meta": build_meta(request).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    retryable: bool = False,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = SyncErrorBody(code=code, message=message, retryable=retryable, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": build_meta(request).model_dump()}


def sync_error_status(exc: SyncError) -> tuple[int, str, dict[str, Any] | None]:
    """Map a sync-layer failure to an HTTP status, error code and details."""
    if isinstance(exc, BackendRejectionError):
        details = dict(exc.details)
        if exc.status_code is not None:
            details["backend_status"] = exc.status_code
        return 409, exc.code or "BACKEND_REJECTED", details or None
    if isinstance(exc, NetworkError):
        return 502, "BACKEND_UNAVAILABLE", None
    return 500, "SYNC_ERROR", None
