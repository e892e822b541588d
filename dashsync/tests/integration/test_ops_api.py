from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from dashsync.apps.api.main import create_app
from dashsync.core.config import get_settings
from dashsync.core.errors import BackendRejectionError, NetworkError
from dashsync.services.query_keys import QuerySpec
from dashsync.services.sync_context import SyncContext


ENTRIES = QuerySpec(table="entries")


def _client(context: SyncContext) -> AsyncClient:
    app = create_app(context)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health(context: SyncContext) -> None:
    async with _client(context) as client:
        legacy = await client.get("/health")
        versioned = await client.get("/v1/health")
    assert legacy.status_code == 200
    assert legacy.json() == {"status": "ok", "backend": "memory"}
    body = versioned.json()
    assert body["data"] == {"status": "ok", "backend": "memory"}
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_stats_reports_cache_counters(context: SyncContext) -> None:
    await context.fetch(ENTRIES)
    await context.fetch(ENTRIES)
    async with _client(context) as client:
        response = await client.get("/v1/ops/sync/stats", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["request_id"] == "req-1"
    assert body["meta"]["backend"] == "memory"
    assert body["meta"]["served_at"] == context.now()
    assert body["data"]["cache"]["hits"] == 1
    assert body["data"]["cache"]["size"] == 1
    assert body["data"]["optimistic"]["pending"] == 0
    assert body["data"]["pacer"]["limit"] == context.pacer.limit
    assert body["data"]["pacer"]["paused"] is False
    assert body["data"]["dedup"]["started"] == 1


@pytest.mark.asyncio
async def test_subscriptions_listing(context: SyncContext) -> None:
    lease = await context.realtime.subscribe("entries", "user_id=eq.7")
    async with _client(context) as client:
        response = await client.get("/v1/ops/sync/subscriptions")
    await lease.release()
    items = response.json()["data"]
    assert len(items) == 1
    assert items[0]["table"] == "entries"
    assert items[0]["filter"] == "user_id=eq.7"
    assert items[0]["status"] == "CONNECTED"
    assert items[0]["subscriber_count"] == 1


@pytest.mark.asyncio
async def test_invalidate_by_tag_and_key(context: SyncContext) -> None:
    await context.fetch(ENTRIES)
    async with _client(context) as client:
        by_tag = await client.post("/v1/ops/sync/invalidate", json={"tag": "entries"})
        await context.fetch(ENTRIES)
        by_key = await client.post("/v1/ops/sync/invalidate", json={"key": ENTRIES.cache_key()})
        both = await client.post("/v1/ops/sync/invalidate", json={"tag": "a", "key": "b"})
    assert by_tag.json()["data"] == {"invalidated": 1}
    assert by_key.json()["data"] == {"invalidated": 1}
    assert both.status_code == 422
    assert both.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_clear_cache(context: SyncContext) -> None:
    await context.fetch(ENTRIES)
    await context.fetch(QuerySpec(table="categories"))
    async with _client(context) as client:
        response = await client.delete("/v1/ops/sync/cache")
    assert response.json()["data"] == {"cleared": 2}
    assert len(context.cache) == 0


@pytest.mark.asyncio
async def test_ops_token_is_enforced_when_configured(context: SyncContext, monkeypatch) -> None:
    monkeypatch.setenv("OPS_API_TOKEN", "s3cret")
    get_settings.cache_clear()
    async with _client(context) as client:
        missing = await client.get("/v1/ops/sync/stats")
        wrong = await client.get("/v1/ops/sync/stats", headers={"X-Ops-Token": "nope"})
        ok = await client.get("/v1/ops/sync/stats", headers={"X-Ops-Token": "s3cret"})
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_backend_failures_map_to_gateway_error(context: SyncContext, monkeypatch) -> None:
    def broken_stats() -> dict:
        raise NetworkError("backend unreachable")

    monkeypatch.setattr(context, "get_stats", broken_stats)
    async with _client(context) as client:
        response = await client.get("/v1/ops/sync/stats")
    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "BACKEND_UNAVAILABLE"
    assert error["retryable"] is True


@pytest.mark.asyncio
async def test_invalidate_by_params(context: SyncContext) -> None:
    mine = QuerySpec(table="entries", filter={"user_id": 7})
    theirs = QuerySpec(table="entries", filter={"user_id": 8})
    await context.fetch(mine)
    await context.fetch(theirs)
    async with _client(context) as client:
        response = await client.post(
            "/v1/ops/sync/invalidate",
            json={"params": {"user_id": 7}, "table": "entries"},
        )
        empty = await client.post("/v1/ops/sync/invalidate", json={"params": {}})
        stray_table = await client.post("/v1/ops/sync/invalidate", json={"tag": "entries", "table": "entries"})
    assert response.json()["data"] == {"invalidated": 1}
    assert mine.cache_key() not in context.cache
    assert theirs.cache_key() in context.cache
    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "BAD_REQUEST"
    assert stray_table.status_code == 422


@pytest.mark.asyncio
async def test_backend_rejections_map_to_conflict(context: SyncContext, monkeypatch) -> None:
    def rejected_stats() -> dict:
        raise BackendRejectionError("permission denied for table entries", code="42501", status_code=403)

    monkeypatch.setattr(context, "get_stats", rejected_stats)
    async with _client(context) as client:
        response = await client.get("/v1/ops/sync/stats")
    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "42501"
    assert error["retryable"] is False
    assert error["details"] == {"backend_status": 403}
