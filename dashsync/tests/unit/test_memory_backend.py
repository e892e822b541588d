from __future__ import annotations

import pytest

from dashsync.core.errors import BackendRejectionError, NetworkError
from dashsync.providers.backend.base import (
    evaluate_expression,
    parse_filter_expression,
    row_matches_filter,
)
from dashsync.providers.backend.memory import InMemoryBackend
from dashsync.services.optimistic import MUTATION_ID_FIELD, OPTIMISTIC_FLAG
from dashsync.services.query_keys import OrderBy


@pytest.mark.asyncio
async def test_query_filters_orders_and_pages(backend: InMemoryBackend) -> None:
    rows = await backend.query("entries", {"user_id": 7}, order=[OrderBy("id", ascending=False)], limit=1)
    assert rows == [{"id": 2, "title": "Reading", "user_id": 7}]
    page = await backend.query("entries", order=[OrderBy("id")], limit=2, offset=1, columns="id")
    assert page == [{"id": 2}, {"id": 3}]


@pytest.mark.asyncio
async def test_insert_assigns_server_id_and_strips_markers(backend: InMemoryBackend) -> None:
    row = await backend.mutate(
        "entries",
        "insert",
        {"id": "temp_abc", "title": "Stretch", OPTIMISTIC_FLAG: True, MUTATION_ID_FIELD: "temp_abc"},
    )
    assert row == {"id": 4, "title": "Stretch"}
    assert backend.rows("entries")[-1] == row


@pytest.mark.asyncio
async def test_unique_violation_is_a_rejection(backend: InMemoryBackend) -> None:
    with pytest.raises(BackendRejectionError) as excinfo:
        await backend.mutate("categories", "insert", {"name": "Health"})
    assert excinfo.value.code == "23505"
    assert excinfo.value.status_code == 409


@pytest.mark.asyncio
async def test_update_missing_row_is_rejected_and_delete_missing_is_noop(backend: InMemoryBackend) -> None:
    with pytest.raises(BackendRejectionError) as excinfo:
        await backend.mutate("entries", "update", {"title": "x"}, row_id=99)
    assert excinfo.value.code == "PGRST116"
    assert await backend.mutate("entries", "delete", {}, row_id=99) is None


@pytest.mark.asyncio
async def test_upsert_inserts_then_updates(backend: InMemoryBackend) -> None:
    inserted = await backend.mutate("categories", "upsert", {"id": 10, "name": "Music"})
    updated = await backend.mutate("categories", "upsert", {"id": 10, "name": "Songs"})
    assert inserted["name"] == "Music"
    assert updated == {"id": 10, "name": "Songs"}
    assert len(backend.rows("categories")) == 3


@pytest.mark.asyncio
async def test_fail_next_targets_operation(backend: InMemoryBackend) -> None:
    backend.fail_next(NetworkError("down"), operation="mutate")
    assert len(await backend.query("entries")) == 3
    with pytest.raises(NetworkError):
        await backend.mutate("entries", "delete", {}, row_id=1)
    assert await backend.mutate("entries", "delete", {}, row_id=1) is not None


def test_filter_expressions() -> None:
    row = {"id": 5, "status": "open", "score": 2.5, "active": True}
    assert row_matches_filter(row, "status=eq.open")
    assert row_matches_filter(row, "status=in.(open,closed)")
    assert row_matches_filter(row, "score=gt.2")
    assert not row_matches_filter(row, "score=lte.2")
    assert row_matches_filter(row, "active=eq.true")
    assert not row_matches_filter(row, "missing=eq.1")
    assert row_matches_filter(row, {"status": "open"})
    assert not row_matches_filter(None, "status=eq.open")
    assert evaluate_expression(row, parse_filter_expression("id=neq.6"))
    with pytest.raises(ValueError):
        parse_filter_expression("status=like.open")


@pytest.mark.asyncio
async def test_query_list_filter_selects_any_member(backend: InMemoryBackend) -> None:
    rows = await backend.query("entries", {"user_id": [7, 8]}, order=[OrderBy("id")], columns="id")
    assert rows == [{"id": 1}, {"id": 2}, {"id": 3}]
    assert await backend.query("entries", {"user_id": (8, 9)}, columns="id") == [{"id": 3}]
    assert await backend.query("entries", {"user_id": []}) == []


def test_mapping_filters_cover_membership_and_null() -> None:
    row = {"id": 5, "status": "open", "archived_at": None}
    assert row_matches_filter(row, {"status": ["open", "closed"]})
    assert row_matches_filter(row, {"status": {"open"}, "id": 5})
    assert not row_matches_filter(row, {"status": ("closed",)})
    assert row_matches_filter(row, {"archived_at": None})
    # A column the row does not carry is null, never equal to a value.
    assert row_matches_filter(row, {"deleted_at": None})
    assert not row_matches_filter(row, {"deleted_at": 1})
    assert not row_matches_filter(row, {"status": None})
