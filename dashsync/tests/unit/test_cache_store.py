from __future__ import annotations

import json

import pytest

from dashsync.services.cache_store import CacheSnapshotStore
from dashsync.services.query_cache import QueryCache
from dashsync.tests.utils.fakes import FakeClock, FakeRedis


def _cache(clock: FakeClock) -> QueryCache:
    return QueryCache(default_ttl_s=300, default_stale_after_s=60, time_source=clock)


@pytest.mark.asyncio
async def test_save_and_load_round_trip(clock: FakeClock) -> None:
    redis = FakeRedis()
    store = CacheSnapshotStore(redis, "snap", ttl_s=300)
    cache = _cache(clock)
    cache.set("entries:a", [{"id": 1}], tags={"entries"})
    assert await store.save(cache) == 1
    assert redis.expiry["snap"] == 300

    restored = _cache(clock)
    assert await store.load(restored) == 1
    assert restored.get("entries:a").value == [{"id": 1}]


@pytest.mark.asyncio
async def test_load_ignores_corrupt_or_foreign_snapshots(clock: FakeClock) -> None:
    redis = FakeRedis()
    store = CacheSnapshotStore(redis, "snap")
    redis.store["snap"] = "{broken"
    assert await store.load(_cache(clock)) == 0
    redis.store["snap"] = json.dumps({"v": 99, "entries": []})
    assert await store.load(_cache(clock)) == 0


@pytest.mark.asyncio
async def test_redis_failures_do_not_break_the_cache(clock: FakeClock) -> None:
    redis = FakeRedis()
    redis.fail_all = True
    store = CacheSnapshotStore(redis, "snap")
    cache = _cache(clock)
    cache.set("k", 1)
    assert await store.save(cache) == 0
    assert await store.load(cache) == 0
    assert cache.get("k").value == 1


@pytest.mark.asyncio
async def test_clear_deletes_snapshot_and_handles_missing_client() -> None:
    redis = FakeRedis()
    redis.store["snap"] = "{}"
    assert await CacheSnapshotStore(redis, "snap").clear() is True
    assert await CacheSnapshotStore(None, "snap").clear() is False
