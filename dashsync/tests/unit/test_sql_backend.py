from __future__ import annotations

import json

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from dashsync.core.config import Settings
from dashsync.core.errors import BackendConfigError, BackendRejectionError
from dashsync.providers.backend.changes import RedisChangeFeed
from dashsync.providers.backend.sql import SqlBackend
from dashsync.services.query_keys import OrderBy
from dashsync.tests.utils.fakes import FakeRedis


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    async with engine.begin() as conn:
        await conn.execute(
            text("CREATE TABLE categories (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL UNIQUE)")
        )
        await conn.execute(text("INSERT INTO categories (name) VALUES ('Health'), ('Learning')"))
    yield engine
    await engine.dispose()


@pytest.mark.asyncio
async def test_query_with_filter_order_and_columns(engine) -> None:
    backend = SqlBackend(engine, settings=Settings())
    rows = await backend.query("categories", order=[OrderBy("name", ascending=False)])
    assert [row["name"] for row in rows] == ["Learning", "Health"]
    filtered = await backend.query("categories", {"name": "Health"}, columns="id")
    assert filtered == [{"id": 1}]


@pytest.mark.asyncio
async def test_insert_update_delete_round_trip(engine) -> None:
    backend = SqlBackend(engine, settings=Settings())
    inserted = await backend.mutate("categories", "insert", {"id": "temp_x", "name": "Music", "_optimistic": True})
    assert inserted == {"id": 3, "name": "Music"}

    updated = await backend.mutate("categories", "update", {"name": "Songs"}, row_id=3)
    assert updated == {"id": 3, "name": "Songs"}

    deleted = await backend.mutate("categories", "delete", {}, row_id=3)
    assert deleted == {"id": 3, "name": "Songs"}
    assert await backend.mutate("categories", "delete", {}, row_id=3) is None


@pytest.mark.asyncio
async def test_upsert_switches_on_existing_row(engine) -> None:
    backend = SqlBackend(engine, settings=Settings())
    assert await backend.mutate("categories", "upsert", {"id": 1, "name": "Fitness"}) == {"id": 1, "name": "Fitness"}
    created = await backend.mutate("categories", "upsert", {"id": 7, "name": "Travel"})
    assert created == {"id": 7, "name": "Travel"}


@pytest.mark.asyncio
async def test_constraint_violation_is_rejection(engine) -> None:
    backend = SqlBackend(engine, settings=Settings())
    with pytest.raises(BackendRejectionError) as excinfo:
        await backend.mutate("categories", "insert", {"name": "Health"})
    assert excinfo.value.code == "23505"
    assert len(await backend.query("categories")) == 2


@pytest.mark.asyncio
async def test_unknown_table_and_column_are_rejections(engine) -> None:
    backend = SqlBackend(engine, settings=Settings())
    with pytest.raises(BackendRejectionError) as excinfo:
        await backend.query("nope")
    assert excinfo.value.code == "42P01"
    with pytest.raises(BackendRejectionError) as excinfo:
        await backend.query("categories", {"color": "red"})
    assert excinfo.value.code == "42703"
    with pytest.raises(BackendRejectionError):
        await backend.mutate("categories", "update", {"name": "x"}, row_id=99)


@pytest.mark.asyncio
async def test_mutations_publish_change_events(engine) -> None:
    redis = FakeRedis()
    backend = SqlBackend(engine, change_feed=RedisChangeFeed(redis, prefix="test:changes"), settings=Settings())
    await backend.mutate("categories", "insert", {"name": "Music"})
    channel, payload = redis.published[0]
    assert channel == "test:changes:categories"
    event = json.loads(payload)
    assert event["type"] == "INSERT"
    assert event["new"]["name"] == "Music"


@pytest.mark.asyncio
async def test_realtime_without_change_feed_is_config_error(engine) -> None:
    backend = SqlBackend(engine, settings=Settings())
    with pytest.raises(BackendConfigError):
        await backend.subscribe_changes("categories", None, lambda event: None)
