from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from dashsync.core.config import get_settings
from dashsync.services.sync_context import SyncContext


def get_sync_context(request: Request) -> SyncContext:
    # The context is built once by the app factory and lives on app.state.
    return request.app.state.sync_context


async def require_ops_token(x_ops_token: str | None = Header(default=None)) -> None:
    expected = get_settings().ops_api_token
    if not expected:
        return
    if not x_ops_token or not hmac.compare_digest(x_ops_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid X-Ops-Token"},
        )
