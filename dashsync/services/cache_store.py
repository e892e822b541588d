from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any

from redis.asyncio import Redis

from dashsync.core.config import get_settings
from dashsync.services.query_cache import QueryCache


logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_sync_redis() -> Redis | None:
    # Reuse one Redis client per event loop for snapshots and change feeds.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop is current_loop:
        return _redis_pool
    try:
        _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_loop = current_loop
    except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
        logger.warning("sync_redis_unavailable", exc_info=exc)
        _redis_pool = None
        return None
    return _redis_pool


class CacheSnapshotStore:
    """Persist the query cache as one JSON document in a key-value store.

    Persistence is best effort: Redis failures are logged and the cache keeps
    working in memory.
    """

    def __init__(self, redis: Any | None, key: str, *, ttl_s: float | None = None) -> None:
        self._redis = redis
        self._key = key
        self._ttl_s = ttl_s

    @property
    def key(self) -> str:
        return self._key

    async def save(self, cache: QueryCache) -> int:
        if self._redis is None:
            return 0
        records = cache.export_entries()
        payload = json.dumps({"v": SNAPSHOT_VERSION, "entries": records}, default=str)
        kwargs: dict[str, Any] = {}
        if self._ttl_s:
            kwargs["ex"] = max(1, math.ceil(self._ttl_s))
        try:
            await self._redis.set(self._key, payload, **kwargs)
        except Exception as exc:  # noqa: BLE001 - snapshot loss only costs a cold start
            logger.warning("cache_snapshot_save_failed key=%s", self._key, exc_info=exc)
            return 0
        logger.debug("cache_snapshot_saved key=%s entries=%s", self._key, len(records))
        return len(records)

    async def load(self, cache: QueryCache) -> int:
        if self._redis is None:
            return 0
        try:
            raw = await self._redis.get(self._key)
        except Exception as exc:  # noqa: BLE001 - start cold when Redis is unreachable
            logger.warning("cache_snapshot_load_failed key=%s", self._key, exc_info=exc)
            return 0
        if not raw:
            return 0
        try:
            document = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache_snapshot_corrupt key=%s", self._key)
            return 0
        if not isinstance(document, dict) or document.get("v") != SNAPSHOT_VERSION:
            logger.warning("cache_snapshot_version_mismatch key=%s", self._key)
            return 0
        entries = document.get("entries")
        if not isinstance(entries, list):
            return 0
        loaded = cache.load_entries(entry for entry in entries if isinstance(entry, dict))
        logger.info("cache_snapshot_loaded key=%s entries=%s", self._key, loaded)
        return loaded

    async def clear(self) -> bool:
        if self._redis is None:
            return False
        return bool(await self._redis.delete(self._key))
