from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from dashsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from dashsync.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    backend: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    context = request.app.state.sync_context
    payload = HealthResponse(status="ok", backend=context.backend.name)
    return success_response(request=request, data=payload)
