from __future__ import annotations

from redis.asyncio import Redis

from dashsync.core.config import Settings, get_settings
from dashsync.core.errors import BackendConfigError
from dashsync.providers.backend.base import DataBackend
from dashsync.providers.backend.changes import RedisChangeFeed
from dashsync.providers.backend.memory import InMemoryBackend
from dashsync.providers.backend.postgrest import PostgrestBackend
from dashsync.providers.backend.sql import SqlBackend


def get_change_feed(settings: Settings | None = None) -> RedisChangeFeed | None:
    settings = settings or get_settings()
    if not settings.change_feed_enabled:
        return None
    redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    return RedisChangeFeed(redis, prefix=settings.change_feed_prefix)


def get_data_backend(settings: Settings | None = None) -> DataBackend:
    settings = settings or get_settings()
    provider = (settings.backend_provider or "memory").lower()

    if provider == "memory":
        return InMemoryBackend()
    if provider == "postgrest":
        return PostgrestBackend(settings=settings, change_feed=get_change_feed(settings))
    if provider == "sql":
        return SqlBackend(settings=settings, change_feed=get_change_feed(settings))
    raise BackendConfigError(f"unknown backend provider: {settings.backend_provider}")
