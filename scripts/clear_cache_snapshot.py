from __future__ import annotations

import asyncio

from dashsync.core.config import get_settings
from dashsync.core.logging import configure_logging
from dashsync.services.cache_store import CacheSnapshotStore, get_sync_redis


async def clear() -> None:
    # Drop the persisted cache so the next start begins cold.
    settings = get_settings()
    store = CacheSnapshotStore(await get_sync_redis(), settings.cache_snapshot_key)
    deleted = await store.clear()
    print(f"cleared_cache_snapshot key={store.key} deleted={deleted}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(clear())
