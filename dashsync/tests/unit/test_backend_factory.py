from __future__ import annotations

import pytest

from dashsync.core.config import Settings
from dashsync.core.errors import BackendConfigError
from dashsync.providers.backend.factory import get_change_feed, get_data_backend
from dashsync.providers.backend.memory import InMemoryBackend
from dashsync.providers.backend.postgrest import PostgrestBackend


def test_memory_is_default() -> None:
    assert isinstance(get_data_backend(Settings()), InMemoryBackend)


@pytest.mark.asyncio
async def test_postgrest_provider_uses_settings() -> None:
    backend = get_data_backend(Settings(backend_provider="postgrest", backend_url="https://db.example.test"))
    assert isinstance(backend, PostgrestBackend)
    await backend.aclose()


def test_unknown_provider_is_config_error() -> None:
    with pytest.raises(BackendConfigError):
        get_data_backend(Settings(backend_provider="firebase"))


def test_change_feed_only_when_enabled() -> None:
    assert get_change_feed(Settings(change_feed_enabled=False)) is None
    feed = get_change_feed(Settings(change_feed_enabled=True, change_feed_prefix="x:changes"))
    assert feed.channel("t") == "x:changes:t"
