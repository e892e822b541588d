from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping

from dashsync.core.config import Settings, get_settings
from dashsync.core.errors import BackendRejectionError, BackendTimeoutError, StaleReadError
from dashsync.providers.backend.base import DataBackend, project_columns, row_matches_filter
from dashsync.services.cache_store import CacheSnapshotStore, get_sync_redis
from dashsync.services.dedup import RequestDeduplicator
from dashsync.services.optimistic import (
    MUTATION_ID_FIELD,
    OPTIMISTIC_FLAG,
    MutationOperation,
    MutationRequest,
    MutationStatus,
    OptimisticMutationTracker,
    PendingMutation,
    is_temporary_id,
)
from dashsync.services.query_cache import QueryCache
from dashsync.services.query_keys import QuerySpec, key_matches_params
from dashsync.services.realtime import RealtimeSubscriptionManager, SubscriptionLease
from dashsync.services.resilience import (
    RequestPacer,
    RequestPriority,
    RetryPolicy,
    fetch_retry_policy,
    mutation_retry_policy,
    realtime_retry_policy,
    request_pacer,
    retry_async,
)
from dashsync.services.telemetry import (
    backend_latency_by_operation,
    counters_snapshot,
    gauges_snapshot,
    increment_counter,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryResult:
    data: Any = None
    is_loading: bool = False
    is_stale: bool = False
    error: BaseException | None = None
    from_cache: bool = False


@dataclass(frozen=True)
class MutationResult:
    success: bool
    data: Any = None
    error: BaseException | None = None
    mutation_id: str | None = None


@dataclass(frozen=True)
class _Read:
    value: Any
    is_stale: bool
    from_cache: bool
    expires_at: float | None


ObserverListener = Callable[["QueryObserver"], None]


class QueryObserver:
    """Live view of one query for a consumer (the read hook).

    ``data`` is recomputed on access so pending optimistic mutations show up
    immediately. A closed observer ignores results of calls still in flight.
    """

    def __init__(self, context: SyncContext, spec: QuerySpec, *, realtime: bool = False) -> None:
        self._context = context
        self.spec = spec
        self.key = spec.cache_key()
        self.realtime = realtime
        self.is_loading = False
        self.error: BaseException | None = None
        self._value: Any = None
        self._has_value = False
        self._stale = False
        self._expires_at: float | None = None
        self._alive = True
        self._dirty = False
        self._listeners: list[ObserverListener] = []
        self._lease: SubscriptionLease | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return not self._alive

    @property
    def data(self) -> Any:
        if not self._has_value:
            return None
        return self._context.merge(self.spec, self._value)

    @property
    def is_stale(self) -> bool:
        if not self._has_value:
            return False
        return self._stale or self._expired()

    def _expired(self) -> bool:
        return self._expires_at is not None and self._context.now() >= self._expires_at

    def snapshot(self) -> QueryResult:
        return QueryResult(
            data=self.data,
            is_loading=self.is_loading,
            is_stale=self.is_stale,
            error=self.error,
        )

    def add_listener(self, listener: ObserverListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            self._listeners = [item for item in self._listeners if item is not listener]

        return _remove

    def _notify(self) -> None:
        if not self._alive:
            return
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:  # noqa: BLE001 - one broken consumer must not starve the rest
                logger.exception("observer_listener_failed key=%s", self.key)

    async def load(self) -> QueryResult:
        """First read: subscribe to changes when requested, then serve cache or fetch."""
        if self._alive and self.realtime and self._lease is None:
            self._lease = await self._context.realtime.subscribe(self.spec.table)
            if not self._alive:
                await self._lease.release()
        await self._run(force=False, allow_stale=True)
        return self.snapshot()

    async def refetch(self) -> QueryResult:
        await self._run(force=True, allow_stale=False)
        return self.snapshot()

    async def _run(self, *, force: bool, allow_stale: bool) -> None:
        if not self._alive:
            return
        self.is_loading = True
        self._notify()
        try:
            read = await self._context._read(self.spec, force=force, allow_stale=allow_stale)
        except Exception as exc:  # noqa: BLE001 - read failures are reported on the observer
            if not self._alive:
                return
            self.is_loading = False
            if self._has_value and self._expired():
                # Keep serving the last value but flag it as degraded.
                self.error = StaleReadError(self.key, exc)
            else:
                self.error = exc
            logger.info("observer_read_failed key=%s error=%s", self.key, exc)
            self._notify()
            return
        if not self._alive:
            return
        self.is_loading = False
        self._apply(read.value, stale=read.is_stale, expires_at=read.expires_at)

    def _apply(self, value: Any, *, stale: bool, expires_at: float | None) -> None:
        self._value = value
        self._has_value = True
        self._stale = stale
        self._expires_at = expires_at
        self.error = None
        self._notify()

    def _receive(self, value: Any, *, stale: bool, expires_at: float) -> None:
        # Results loaded by any caller for this key (shared fetch, revalidation).
        if self._alive:
            self._apply(value, stale=stale, expires_at=expires_at)

    def _schedule_refresh(self) -> None:
        # Observers that never loaded have nothing on screen to refresh.
        if not self._alive or (not self._has_value and not self.is_loading and self.error is None):
            return
        task = self._refresh_task
        if task is not None and not task.done():
            self._dirty = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._refresh_task = loop.create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while self._alive:
            self._dirty = False
            await self._run(force=False, allow_stale=False)
            if not self._dirty:
                return

    async def close(self) -> None:
        if not self._alive:
            return
        self._alive = False
        self._listeners.clear()
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        lease = self._lease
        self._lease = None
        if lease is not None:
            await lease.release()
        self._context._detach(self)

    async def __aenter__(self) -> "QueryObserver":
        await self.load()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class SyncContext:
    """Process-wide sync state built once at start-up and passed to consumers.

    Owns the query cache, the request deduplicator, the optimistic mutation
    tracker, the realtime subscription manager and the data backend.
    """

    def __init__(
        self,
        backend: DataBackend,
        *,
        settings: Settings | None = None,
        cache: QueryCache | None = None,
        snapshot_store: CacheSnapshotStore | None = None,
        fetch_policy: RetryPolicy | None = None,
        mutation_policy: RetryPolicy | None = None,
        realtime_policy: RetryPolicy | None = None,
        pacer: RequestPacer | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.backend = backend
        self._time = time_source or time.time
        self.cache = cache or QueryCache(
            max_entries=self.settings.cache_max_entries,
            default_ttl_s=self.settings.cache_ttl_ms / 1000.0,
            default_stale_after_s=self.settings.cache_stale_after_ms / 1000.0,
            time_source=self._time,
        )
        self.dedup = RequestDeduplicator()
        self.tracker = OptimisticMutationTracker(
            invalidate=self._invalidate_table,
            pending_timeout_s=self.settings.mutation_pending_timeout_s,
            time_source=self._time,
        )
        # Entries backing tables with pending mutations are never evicted.
        self.cache.protected_tags = self.tracker.pending_tables
        self.tracker.add_listener(self._on_mutation)
        self.realtime = RealtimeSubscriptionManager(
            backend,
            invalidate=self._on_remote_change,
            retry_policy=realtime_policy or realtime_retry_policy(self.settings),
            time_source=self._time,
        )
        self.snapshot_store = snapshot_store
        self._fetch_policy = fetch_policy or fetch_retry_policy(self.settings)
        self._mutation_policy = mutation_policy or mutation_retry_policy(self.settings)
        self.pacer = pacer or request_pacer(self.settings)
        self._observers: list[QueryObserver] = []
        # Outcome of each write still in flight, so later writes to its row can wait for it.
        self._writes: dict[str, asyncio.Future[None]] = {}
        self._janitor: asyncio.Task[None] | None = None
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SyncContext":
        from dashsync.providers.backend.factory import get_data_backend

        settings = settings or get_settings()
        return cls(get_data_backend(settings), settings=settings)

    def now(self) -> float:
        return self._time()

    # Reads

    async def fetch(self, spec: QuerySpec, *, force: bool = False, allow_stale: bool = True) -> QueryResult:
        """Read through cache, dedup and retry; backend failures propagate."""
        read = await self._read(spec, force=force, allow_stale=allow_stale)
        return QueryResult(
            data=self.merge(spec, read.value),
            is_stale=read.is_stale,
            from_cache=read.from_cache,
        )

    async def _read(self, spec: QuerySpec, *, force: bool, allow_stale: bool) -> _Read:
        key = spec.cache_key()
        if not force:
            # Background revalidations queue behind foreground reads.
            lookup = self.cache.get(
                key,
                allow_stale=allow_stale,
                revalidate=lambda: self._load(spec, priority=RequestPriority.LOW),
            )
            if lookup.hit:
                entry = self.cache.peek(key)
                return _Read(
                    value=lookup.value,
                    is_stale=lookup.is_stale,
                    from_cache=True,
                    expires_at=entry.expires_at if entry is not None else None,
                )
        return await self._load(spec)

    async def _load(self, spec: QuerySpec, *, priority: int = RequestPriority.MEDIUM) -> _Read:
        key = spec.cache_key()

        async def _call() -> _Read:
            # Captured before the backend call so a racing invalidation is not overwritten.
            token = self.cache.generation(key, spec.cache_tags())
            rows = await retry_async(
                lambda: self.backend.query(
                    spec.table,
                    filter=spec.filter,
                    order=spec.order,
                    limit=spec.limit,
                    offset=spec.offset,
                    columns=spec.columns,
                ),
                policy=self._fetch_policy,
                name=f"query.{spec.table}",
                pacer=self.pacer,
                priority=priority,
            )
            value: Any = (rows[0] if rows else None) if spec.single else rows
            entry = self.cache.set(key, value, tags=spec.cache_tags(), generation=token)
            read = _Read(value=value, is_stale=entry.invalidated, from_cache=False, expires_at=entry.expires_at)
            for observer in self._observers_for(key=key):
                observer._receive(value, stale=read.is_stale, expires_at=entry.expires_at)
            return read

        return await self.dedup.run(key, _call)

    def merge(self, spec: QuerySpec, value: Any) -> Any:
        """Overlay pending optimistic mutations onto a cached query value."""
        if spec.single:
            if not isinstance(value, Mapping):
                return value
            id_field = self.tracker.id_field
            row_id = self.tracker.resolve_id(value.get(id_field))
            merged = self.tracker.merge_into(spec.table, [value])
            return next(
                (row for row in merged if self.tracker.resolve_id(row.get(id_field)) == row_id),
                None,
            )
        merged = self.tracker.merge_into(spec.table, value or [])
        if not spec.filter:
            return merged
        # Client-predicted rows only show in queries whose filter they satisfy.
        return [
            row
            for row in merged
            if not (isinstance(row, Mapping) and row.get(OPTIMISTIC_FLAG)) or row_matches_filter(row, spec.filter)
        ]

    def watch(self, spec: QuerySpec, *, realtime: bool = False) -> QueryObserver:
        observer = QueryObserver(self, spec, realtime=realtime)
        self._observers.append(observer)
        return observer

    def _detach(self, observer: QueryObserver) -> None:
        self._observers = [item for item in self._observers if item is not observer]

    def _observers_for(self, *, key: str | None = None, table: str | None = None) -> list[QueryObserver]:
        return [
            observer
            for observer in self._observers
            if not observer.closed
            and (key is None or observer.key == key)
            and (table is None or table in observer.spec.cache_tags())
        ]

    # Writes

    async def mutate(
        self,
        table: str,
        operation: MutationOperation | str,
        payload: Mapping[str, Any] | None = None,
        row_id: Any = None,
    ) -> MutationResult:
        """Apply optimistically, send to the backend, then confirm or roll back.

        Failures are returned in the result, never raised or dropped. A write
        aimed at a row whose insert is still pending waits for that insert and
        then targets the server-assigned id.
        """
        try:
            mutation_id = self.tracker.apply(MutationRequest(table, operation, payload or {}, row_id))
        except ValueError as exc:
            return MutationResult(success=False, error=exc)
        mutation = self.tracker.get(mutation_id)
        settled: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._writes[mutation_id] = settled
        try:
            return await self._send(mutation)
        finally:
            self._writes.pop(mutation_id, None)
            if not settled.done():
                settled.set_result(None)

    async def _send(self, mutation: PendingMutation) -> MutationResult:
        table = mutation.table

        async def _call() -> Any:
            target = self.tracker.resolve_id(mutation.row_id)
            if is_temporary_id(target):
                if mutation.operation in (MutationOperation.UPDATE, MutationOperation.DELETE):
                    raise BackendRejectionError(
                        f"row {target} on {table} was never created",
                        code="PGRST116",
                        status_code=404,
                    )
                target = None
            return await self.backend.mutate(table, mutation.operation, mutation.optimistic_payload, target)

        try:
            await self._after_pending_insert(mutation)
            row = await retry_async(
                _call,
                policy=self._mutation_policy,
                name=f"mutate.{table}",
                pacer=self.pacer,
                priority=RequestPriority.HIGH,
            )
        except asyncio.CancelledError:
            # The write may or may not have landed; drop the prediction and refetch.
            self.tracker.fail(mutation.id, BackendTimeoutError("mutation cancelled"))
            self._invalidate_table(table)
            raise
        except Exception as exc:  # noqa: BLE001 - failures are returned to the caller
            self.tracker.fail(mutation.id, exc)
            increment_counter("mutations_failed_total")
            return MutationResult(success=False, error=exc, mutation_id=mutation.id)
        if self.tracker.get(mutation.id) is not None:
            self._settle_observers(mutation, row)
        if not self.tracker.confirm(mutation.id, row):
            # Expired while in flight; the write still landed, so refresh the table.
            self._invalidate_table(table)
        increment_counter("mutations_confirmed_total")
        return MutationResult(success=True, data=row, mutation_id=mutation.id)

    async def _after_pending_insert(self, mutation: PendingMutation) -> None:
        if not is_temporary_id(mutation.row_id) or mutation.operation is MutationOperation.INSERT:
            return
        for other in self.tracker.pending(mutation.table):
            if other.id == mutation.id or other.row_id != mutation.row_id:
                continue
            if other.operation not in (MutationOperation.INSERT, MutationOperation.UPSERT):
                continue
            write = self._writes.get(other.id)
            if write is not None:
                logger.debug("mutation_waiting_for_insert id=%s insert_id=%s", mutation.id, other.id)
                await asyncio.shield(write)

    def _settle_observers(self, mutation: PendingMutation, server_row: Any) -> None:
        # Fold the confirmed row into what observers hold so it stays on screen
        # between dropping the overlay and the refetch that follows.
        for observer in self._observers_for(table=mutation.table):
            if observer.spec.table != mutation.table or not observer._has_value:
                continue
            observer._value = self._settled_value(observer.spec, observer._value, mutation, server_row)

    def _settled_value(self, spec: QuerySpec, value: Any, mutation: PendingMutation, server_row: Any) -> Any:
        id_field = self.tracker.id_field
        server_id = server_row.get(id_field) if isinstance(server_row, Mapping) else None
        identities = {mutation.row_id, server_id} - {None}

        def _same(row: Any) -> bool:
            return isinstance(row, Mapping) and row.get(id_field) in identities

        def _replacement(current: Any) -> Any:
            if mutation.operation is MutationOperation.DELETE:
                return None
            if isinstance(server_row, Mapping):
                settled = dict(server_row)
            elif isinstance(current, Mapping):
                # No representation returned; keep the predicted fields.
                markers = (OPTIMISTIC_FLAG, MUTATION_ID_FIELD)
                predicted = {k: v for k, v in mutation.optimistic_payload.items() if k not in markers}
                settled = {**current, **predicted, id_field: current.get(id_field)}
            else:
                return None
            if spec.filter and not row_matches_filter(settled, spec.filter):
                return None
            return project_columns([settled], spec.columns)[0]

        if spec.single:
            return _replacement(value) if _same(value) else value
        rows = list(value or [])
        index = next((i for i, row in enumerate(rows) if _same(row)), None)
        replacement = _replacement(rows[index] if index is not None else None)
        if index is not None:
            if replacement is None:
                del rows[index]
            else:
                rows[index] = replacement
        elif replacement is not None:
            rows.append(replacement)
        return rows

    def _on_mutation(self, mutation: PendingMutation) -> None:
        for observer in self._observers_for(table=mutation.table):
            observer._notify()
        if mutation.status is MutationStatus.FAILED:
            logger.debug("mutation_rolled_back id=%s table=%s", mutation.id, mutation.table)

    # Invalidation

    def _invalidate_table(self, table: str, *, mark_stale: bool = False) -> int:
        count = self.cache.invalidate_by_tag(table, mark_stale=mark_stale)
        for observer in self._observers_for(table=table):
            observer._schedule_refresh()
        return count

    def _on_remote_change(self, table: str) -> None:
        mark_stale = self.settings.realtime_invalidate_mode == "mark_stale"
        self._invalidate_table(table, mark_stale=mark_stale)

    def invalidate(
        self,
        *,
        tag: str | None = None,
        key: str | None = None,
        params: Mapping[str, Any] | None = None,
        table: str | None = None,
    ) -> int:
        if tag is not None:
            return self._invalidate_table(tag)
        if key is not None:
            removed = self.cache.invalidate(key)
            for observer in self._observers_for(key=key):
                observer._schedule_refresh()
            return int(removed)
        if params is not None:
            count = self.cache.invalidate_by_params(params, table=table)
            for observer in self._observers_for(table=table):
                if key_matches_params(observer.key, params, table=table):
                    observer._schedule_refresh()
            return count
        raise ValueError("one of tag, key or params is required")

    def clear_cache(self) -> int:
        size = len(self.cache)
        self.cache.clear()
        return size

    # Lifecycle and stats

    def get_stats(self) -> dict[str, Any]:
        return {
            "backend": self.backend.name,
            "cache": self.cache.stats().as_dict(),
            "dedup": asdict(self.dedup.stats()),
            "in_flight": self.dedup.in_flight(),
            "pacer": asdict(self.pacer.stats()),
            "optimistic": self.tracker.stats(),
            "subscriptions": self.realtime.list_subscriptions(),
            "observers": len(self._observers_for()),
            "counters": counters_snapshot(),
            "gauges": gauges_snapshot(),
            "backend_latency": backend_latency_by_operation(300),
        }

    async def maintain(self) -> dict[str, int]:
        """One janitor pass: drop expired entries, expire stuck mutations, save a snapshot."""
        expired_entries = self.cache.cleanup()
        expired_mutations = self.tracker.expire_pending()
        saved = 0
        if self.snapshot_store is not None:
            saved = await self.snapshot_store.save(self.cache)
        if expired_entries or expired_mutations:
            logger.info(
                "sync_maintenance expired_entries=%s expired_mutations=%s",
                expired_entries,
                len(expired_mutations),
            )
        return {
            "expired_entries": expired_entries,
            "expired_mutations": len(expired_mutations),
            "snapshot_entries": saved,
        }

    async def _janitor_loop(self) -> None:
        interval = max(1, self.settings.cache_cleanup_interval_s)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.maintain()
            except Exception:  # noqa: BLE001 - keep the janitor alive across failures
                logger.exception("sync_janitor_failed")

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.snapshot_store is None and self.settings.cache_persist_enabled:
            redis = await get_sync_redis()
            self.snapshot_store = CacheSnapshotStore(
                redis,
                self.settings.cache_snapshot_key,
                ttl_s=self.settings.cache_ttl_ms / 1000.0,
            )
        if self.snapshot_store is not None:
            await self.snapshot_store.load(self.cache)
        self._janitor = asyncio.get_running_loop().create_task(self._janitor_loop())
        logger.info("sync_context_started backend=%s", self.backend.name)

    async def aclose(self) -> None:
        janitor = self._janitor
        self._janitor = None
        if janitor is not None:
            janitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await janitor
        for observer in list(self._observers):
            await observer.close()
        await self.realtime.close_all()
        for task in self.cache.pending_revalidations():
            task.cancel()
        if self.snapshot_store is not None:
            await self.snapshot_store.save(self.cache)
        await self.backend.aclose()
        self._started = False
        logger.info("sync_context_closed backend=%s", self.backend.name)

    def reset(self) -> None:
        # Test isolation: forget cached data, in-flight keys and pending mutations.
        self.cache.clear()
        self.cache.reset_stats()
        self.dedup.clear()
        self.tracker.clear()

    async def __aenter__(self) -> "SyncContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
