from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

from dashsync.services.query_keys import key_matches_params


logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    # Timestamps come from the cache's time source (wall clock by default so snapshots survive restarts).
    key: str
    value: Any
    inserted_at: float
    stale_at: float
    expires_at: float
    tags: frozenset[str]
    last_accessed: float
    access_count: int = 0
    invalidated: bool = False

    @property
    def ttl_s(self) -> float:
        return self.expires_at - self.inserted_at

    @property
    def stale_after_s(self) -> float:
        return self.stale_at - self.inserted_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_stale(self, now: float) -> bool:
        return self.invalidated or now >= self.stale_at


@dataclass(frozen=True)
class CacheLookup:
    value: Any = None
    is_stale: bool = False
    hit: bool = False


@dataclass(frozen=True)
class CacheStats:
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

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GenerationToken:
    # Captures invalidation counters at fetch start; see QueryCache.set(generation=...).
    epoch: int
    key: tuple[str, int]
    tags: tuple[tuple[str, int], ...] = field(default=())


class QueryCache:
    """In-memory store of query results keyed by canonical query signature.

    Entries carry a soft expiry (``stale_at``: still served, flagged stale, and
    revalidated in the background) and a hard expiry (``expires_at``: evicted,
    reads miss). Capacity is enforced least-recently-used first, skipping any
    entry tagged with a table that still has pending optimistic mutations.
    """

    def __init__(
        self,
        *,
        max_entries: int = 100,
        default_ttl_s: float = 300.0,
        default_stale_after_s: float = 60.0,
        time_source: Callable[[], float] | None = None,
        protected_tags: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        if default_stale_after_s > default_ttl_s:
            raise ValueError("default_stale_after_s must not exceed default_ttl_s")
        self._max_entries = max(1, int(max_entries))
        self._default_ttl_s = float(default_ttl_s)
        self._default_stale_after_s = float(default_stale_after_s)
        self._time = time_source or time.time
        self.protected_tags = protected_tags
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tag_index: dict[str, set[str]] = {}
        self._tag_generations: dict[str, int] = {}
        self._key_generations: dict[str, int] = {}
        self._epoch = 0
        self._revalidating: dict[str, asyncio.Task[Any]] = {}
        self.reset_stats()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._stale_hits = 0
        self._expired = 0
        self._evictions = 0
        self._writes = 0
        self._invalidations = 0

    def get(
        self,
        key: str,
        *,
        allow_stale: bool = True,
        revalidate: Callable[[], Awaitable[Any]] | None = None,
    ) -> CacheLookup:
        """Return the cached value for ``key``.

        A miss is a normal outcome (``hit=False``), never an exception. With
        ``allow_stale`` a stale entry is returned flagged and ``revalidate`` is
        scheduled once per key on the running loop; without it a stale entry
        reads as a miss but stays cached.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("cache_miss key=%s", key)
            return CacheLookup()
        now = self._time()
        if entry.is_expired(now):
            self._remove(key)
            self._expired += 1
            self._misses += 1
            logger.debug("cache_expired key=%s", key)
            return CacheLookup()
        stale = entry.is_stale(now)
        if stale and not allow_stale:
            self._misses += 1
            return CacheLookup()
        entry.last_accessed = now
        entry.access_count += 1
        self._entries.move_to_end(key)
        if stale:
            self._stale_hits += 1
            if revalidate is not None:
                self._schedule_revalidation(key, revalidate)
        else:
            self._hits += 1
        return CacheLookup(value=entry.value, is_stale=stale, hit=True)

    def peek(self, key: str) -> CacheEntry | None:
        # Inspect without touching LRU order or statistics.
        return self._entries.get(key)

    def generation(self, key: str, tags: Iterable[str] = ()) -> GenerationToken:
        return GenerationToken(
            epoch=self._epoch,
            key=(key, self._key_generations.get(key, 0)),
            tags=tuple(sorted((tag, self._tag_generations.get(tag, 0)) for tag in set(tags))),
        )

    def _generation_changed(self, token: GenerationToken) -> bool:
        if token.epoch != self._epoch:
            return True
        key, seen = token.key
        if self._key_generations.get(key, 0) != seen:
            return True
        return any(self._tag_generations.get(tag, 0) != count for tag, count in token.tags)

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl_s: float | None = None,
        stale_after_s: float | None = None,
        tags: Iterable[str] = (),
        generation: GenerationToken | None = None,
    ) -> CacheEntry:
        """Store ``value`` under ``key``, replacing any previous entry in place.

        When ``generation`` was captured before a fetch and the key or one of
        its tags has been invalidated since, the value is stored already stale:
        it is still better than nothing, but must not be treated as fresh.
        """
        ttl = self._default_ttl_s if ttl_s is None else float(ttl_s)
        if stale_after_s is None:
            stale_after = min(self._default_stale_after_s, ttl)
        else:
            stale_after = float(stale_after_s)
        if ttl <= 0:
            raise ValueError("ttl_s must be positive")
        if stale_after > ttl:
            raise ValueError("stale_after_s must not exceed ttl_s")
        now = self._time()
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            stale_at=now + stale_after,
            expires_at=now + ttl,
            tags=frozenset(tags),
            last_accessed=now,
            invalidated=generation is not None and self._generation_changed(generation),
        )
        if entry.invalidated:
            logger.debug("cache_set_after_invalidation key=%s", key)
        self._store(entry)
        self._writes += 1
        self._enforce_capacity(keep=key)
        return entry

    def _store(self, entry: CacheEntry) -> None:
        previous = self._entries.get(entry.key)
        if previous is not None:
            self._unindex(entry.key, previous.tags)
        # Swap the whole entry so readers never see a partially updated one.
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(entry.key)

    def _unindex(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._unindex(key, entry.tags)
        return entry

    def _enforce_capacity(self, *, keep: str | None = None) -> None:
        if len(self._entries) <= self._max_entries:
            return
        self.cleanup()
        protected = set(self.protected_tags()) if self.protected_tags is not None else set()
        while len(self._entries) > self._max_entries:
            victim = next(
                (
                    key
                    for key, entry in self._entries.items()
                    if key != keep and not (entry.tags & protected)
                ),
                None,
            )
            if victim is None:
                # Everything else backs a table with pending mutations; allow temporary overflow.
                logger.debug("cache_over_capacity size=%s max=%s", len(self._entries), self._max_entries)
                return
            self._remove(victim)
            self._evictions += 1
            logger.debug("cache_evicted key=%s", victim)

    def invalidate(self, key: str) -> bool:
        self._key_generations[key] = self._key_generations.get(key, 0) + 1
        removed = self._remove(key) is not None
        if removed:
            self._invalidations += 1
        return removed

    def invalidate_by_tag(self, tag: str, *, mark_stale: bool = False) -> int:
        """Remove (or mark stale) every entry tagged ``tag``; returns the count.

        Repeated calls are harmless, which makes at-least-once change delivery safe.
        """
        self._tag_generations[tag] = self._tag_generations.get(tag, 0) + 1
        keys = list(self._tag_index.get(tag, ()))
        for key in keys:
            if mark_stale:
                self._entries[key].invalidated = True
            else:
                self._remove(key)
        self._invalidations += len(keys)
        if keys:
            logger.debug("cache_tag_invalidated tag=%s count=%s mark_stale=%s", tag, len(keys), mark_stale)
        return len(keys)

    def invalidate_by_tags(self, tags: Iterable[str], *, mark_stale: bool = False) -> int:
        return sum(self.invalidate_by_tag(tag, mark_stale=mark_stale) for tag in tags)

    def invalidate_by_params(
        self,
        params: Mapping[str, Any],
        *,
        table: str | None = None,
        mark_stale: bool = False,
    ) -> int:
        """Remove (or mark stale) entries whose query filter carries all of ``params``."""
        if not params:
            raise ValueError("params must not be empty")
        keys = [key for key in self._entries if key_matches_params(key, params, table=table)]
        for key in keys:
            self._key_generations[key] = self._key_generations.get(key, 0) + 1
            if mark_stale:
                self._entries[key].invalidated = True
            else:
                self._remove(key)
        self._invalidations += len(keys)
        if keys:
            logger.debug("cache_params_invalidated table=%s count=%s", table, len(keys))
        return len(keys)

    def cleanup(self) -> int:
        # Drop hard-expired entries; called by the janitor and before evicting.
        now = self._time()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        self._expired += len(expired)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._tag_index.clear()
        self._epoch += 1
        for task in self._revalidating.values():
            task.cancel()
        self._revalidating.clear()

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def tags(self) -> list[str]:
        return sorted(self._tag_index.keys())

    def stats(self) -> CacheStats:
        lookups = self._hits + self._stale_hits + self._misses
        inserted = [entry.inserted_at for entry in self._entries.values()]
        return CacheStats(
            size=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            stale_hits=self._stale_hits,
            expired=self._expired,
            evictions=self._evictions,
            writes=self._writes,
            invalidations=self._invalidations,
            hit_rate=((self._hits + self._stale_hits) / lookups) if lookups else 0.0,
            oldest_entry=min(inserted) if inserted else None,
            newest_entry=max(inserted) if inserted else None,
        )

    def _schedule_revalidation(self, key: str, revalidate: Callable[[], Awaitable[Any]]) -> None:
        if key in self._revalidating:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("cache_revalidation_skipped_no_loop key=%s", key)
            return
        self._revalidating[key] = loop.create_task(self._run_revalidation(key, revalidate))

    async def _run_revalidation(self, key: str, revalidate: Callable[[], Awaitable[Any]]) -> None:
        try:
            await revalidate()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - stale data stays served when revalidation fails
            logger.warning("cache_revalidation_failed key=%s", key, exc_info=exc)
        finally:
            self._revalidating.pop(key, None)

    def pending_revalidations(self) -> list[asyncio.Task[Any]]:
        return list(self._revalidating.values())

    def export_entries(self) -> list[dict[str, Any]]:
        return [
            {
                "key": entry.key,
                "value": entry.value,
                "inserted_at": entry.inserted_at,
                "stale_at": entry.stale_at,
                "expires_at": entry.expires_at,
                "tags": sorted(entry.tags),
            }
            for entry in self._entries.values()
        ]

    def load_entries(self, records: Iterable[dict[str, Any]]) -> int:
        # Restore persisted entries, skipping anything already past its hard expiry.
        now = self._time()
        loaded = 0
        for record in records:
            try:
                expires_at = float(record["expires_at"])
                if expires_at <= now:
                    continue
                entry = CacheEntry(
                    key=str(record["key"]),
                    value=record.get("value"),
                    inserted_at=float(record["inserted_at"]),
                    stale_at=min(float(record["stale_at"]), expires_at),
                    expires_at=expires_at,
                    tags=frozenset(record.get("tags") or ()),
                    last_accessed=now,
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("cache_snapshot_record_invalid record=%r", record)
                continue
            self._store(entry)
            loaded += 1
        self._enforce_capacity()
        return loaded
