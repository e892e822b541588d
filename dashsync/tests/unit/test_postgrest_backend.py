from __future__ import annotations

import json

import httpx
import pytest

from dashsync.core.config import Settings
from dashsync.core.errors import (
    BackendConfigError,
    BackendRejectionError,
    BackendTimeoutError,
    NetworkError,
    RateLimitedError,
)
from dashsync.providers.backend.postgrest import PostgrestBackend, filter_params
from dashsync.services.query_keys import OrderBy
from dashsync.services.telemetry import backend_latency_by_operation


def _backend(handler) -> PostgrestBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PostgrestBackend(
        "https://db.example.test",
        "anon-key",
        client=client,
        settings=Settings(),
    )


@pytest.mark.asyncio
async def test_query_builds_postgrest_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": 1, "name": "Health"}])

    backend = _backend(handler)
    rows = await backend.query(
        "categories",
        {"user_id": 7, "archived": False},
        order=[OrderBy("created_at", ascending=False)],
        limit=10,
        offset=20,
        columns="id,name",
    )
    assert rows == [{"id": 1, "name": "Health"}]
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/categories"
    params = dict(request.url.params)
    assert params == {
        "select": "id,name",
        "archived": "eq.false",
        "user_id": "eq.7",
        "order": "created_at.desc",
        "limit": "10",
        "offset": "20",
    }
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"
    assert request.headers["Accept-Profile"] == "public"
    assert backend_latency_by_operation(60)["postgrest.query"]["count"] == 1


@pytest.mark.asyncio
async def test_insert_drops_placeholder_id_and_returns_row() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.headers["Prefer"] == "return=representation"
        return httpx.Response(201, json=[{"id": 12, "title": "Stretch"}])

    backend = _backend(handler)
    row = await backend.mutate(
        "entries",
        "insert",
        {"id": "temp_1", "title": "Stretch", "_optimistic": True, "_mutation_id": "temp_1"},
    )
    assert row == {"id": 12, "title": "Stretch"}
    assert bodies == [{"title": "Stretch"}]


@pytest.mark.asyncio
async def test_update_and_delete_target_row_id() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "PATCH":
            return httpx.Response(200, json=[{"id": 3, "title": "New"}])
        return httpx.Response(200, json=[])

    backend = _backend(handler)
    assert await backend.mutate("entries", "update", {"title": "New"}, row_id=3) == {"id": 3, "title": "New"}
    assert await backend.mutate("entries", "delete", {}, row_id=3) is None
    assert [request.method for request in seen] == ["PATCH", "DELETE"]
    assert all(dict(request.url.params) == {"id": "eq.3"} for request in seen)


@pytest.mark.asyncio
async def test_update_of_missing_row_is_rejected() -> None:
    backend = _backend(lambda request: httpx.Response(200, json=[]))
    with pytest.raises(BackendRejectionError) as excinfo:
        await backend.mutate("entries", "update", {"title": "x"}, row_id=99)
    assert excinfo.value.code == "PGRST116"


@pytest.mark.asyncio
async def test_client_errors_map_to_rejections() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            409,
            json={"code": "23505", "message": "duplicate key value", "hint": None, "details": "Key (name)"},
        )

    backend = _backend(handler)
    with pytest.raises(BackendRejectionError) as excinfo:
        await backend.mutate("categories", "insert", {"name": "Health"})
    assert excinfo.value.code == "23505"
    assert excinfo.value.status_code == 409
    assert excinfo.value.details == {"details": "Key (name)"}


@pytest.mark.asyncio
async def test_server_errors_and_transport_failures_are_transient() -> None:
    backend = _backend(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(NetworkError) as excinfo:
        await backend.query("entries")
    assert excinfo.value.status_code == 503

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkError):
        await _backend(refuse).query("entries")

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(BackendTimeoutError):
        await _backend(slow).query("entries")


@pytest.mark.asyncio
async def test_too_many_requests_maps_to_rate_limit() -> None:
    backend = _backend(lambda request: httpx.Response(429, headers={"Retry-After": "12"}, json={}))
    with pytest.raises(RateLimitedError) as excinfo:
        await backend.query("entries")
    assert excinfo.value.retry_after_s == 12.0
    assert excinfo.value.status_code == 429

    undated = _backend(lambda request: httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}))
    with pytest.raises(RateLimitedError) as excinfo:
        await undated.query("entries")
    assert excinfo.value.retry_after_s is None


@pytest.mark.asyncio
async def test_realtime_requires_change_feed() -> None:
    backend = _backend(lambda request: httpx.Response(200, json=[]))
    with pytest.raises(BackendConfigError):
        await backend.subscribe_changes("entries", None, lambda event: None)


def test_missing_url_is_a_config_error() -> None:
    with pytest.raises(BackendConfigError):
        PostgrestBackend(settings=Settings(backend_url=None))


def test_filter_params_handle_null_and_lists() -> None:
    assert filter_params({"deleted_at": None, "status": ["a", "b"]}) == [
        ("deleted_at", "is.null"),
        ("status", "in.(a,b)"),
    ]
