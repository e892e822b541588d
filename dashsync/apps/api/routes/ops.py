from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, model_validator

from dashsync.apps.api.deps import get_sync_context, require_ops_token
from dashsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from dashsync.apps.api.response import SuccessEnvelope, success_response
from dashsync.services.sync_context import SyncContext


router = APIRouter(
    prefix="/ops/sync",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_ops_token)],
)


class SubscriptionInfo(BaseModel):
    id: str
    table: str
    filter: str | None
    status: str
    subscriber_count: int
    last_updated: float
    error_count: int
    last_error: str | None
    last_event: str | None
    reconnect_attempts: int


class CacheStatsOut(BaseModel):
    size: int
    hits: int
    misses: int
    stale_hits: int
    expired: int
    evictions: int
    writes: int
    invalidations: int
    hit_rate: float
    oldest_entry: float | None
    newest_entry: float | None


class DedupStatsOut(BaseModel):
    in_flight: int
    started: int
    shared: int
    failed: int


class PacerStatsOut(BaseModel):
    limit: int
    active: int
    queued: int
    paused: bool
    rate_limited_total: int


class OptimisticStatsOut(BaseModel):
    pending: int
    confirmed_total: int
    failed_total: int
    by_table: dict[str, int]


class SyncStatsOut(BaseModel):
    backend: str
    cache: CacheStatsOut
    dedup: DedupStatsOut
    in_flight: list[str]
    pacer: PacerStatsOut
    optimistic: OptimisticStatsOut
    subscriptions: list[SubscriptionInfo]
    observers: int
    counters: dict[str, int]
    gauges: dict[str, float]
    backend_latency: dict[str, dict[str, float | int | None]]


class InvalidateRequest(BaseModel):
    tag: str | None = None
    key: str | None = None
    # Query filter values to match; ``table`` narrows the match to one table.
    params: dict[str, Any] | None = None
    table: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "InvalidateRequest":
        chosen = [value for value in (self.tag, self.key, self.params) if value is not None]
        if len(chosen) != 1:
            raise ValueError("provide exactly one of tag, key or params")
        if self.table is not None and self.params is None:
            raise ValueError("table only applies to params invalidation")
        return self


class InvalidateResponse(BaseModel):
    invalidated: int


class ClearCacheResponse(BaseModel):
    cleared: int


@router.get("/stats", response_model=SuccessEnvelope[SyncStatsOut])
async def sync_stats(request: Request, context: SyncContext = Depends(get_sync_context)) -> dict:
    # Read-only snapshot for dashboards; never affects correctness.
    stats = SyncStatsOut.model_validate(context.get_stats())
    return success_response(request=request, data=stats)


@router.get("/subscriptions", response_model=SuccessEnvelope[list[SubscriptionInfo]])
async def sync_subscriptions(request: Request, context: SyncContext = Depends(get_sync_context)) -> dict:
    items = [SubscriptionInfo(**item) for item in context.realtime.list_subscriptions()]
    return success_response(request=request, data=items)


@router.post("/invalidate", response_model=SuccessEnvelope[InvalidateResponse])
async def sync_invalidate(
    payload: InvalidateRequest,
    request: Request,
    context: SyncContext = Depends(get_sync_context),
) -> dict:
    try:
        count = context.invalidate(
            tag=payload.tag,
            key=payload.key,
            params=payload.params,
            table=payload.table,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": str(exc)}) from exc
    return success_response(request=request, data=InvalidateResponse(invalidated=count))


@router.delete("/cache", response_model=SuccessEnvelope[ClearCacheResponse])
async def sync_clear_cache(request: Request, context: SyncContext = Depends(get_sync_context)) -> dict:
    cleared = context.clear_cache()
    return success_response(request=request, data=ClearCacheResponse(cleared=cleared))
