from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from typing import Any, Iterable, Mapping, Sequence

from dashsync.core.errors import BackendRejectionError, NetworkError
from dashsync.providers.backend.base import (
    ChangeCallback,
    ChangeEvent,
    ChangeType,
    ErrorCallback,
    project_columns,
    row_matches_filter,
    sort_rows,
)
from dashsync.services.optimistic import (
    MUTATION_ID_FIELD,
    OPTIMISTIC_FLAG,
    MutationOperation,
    is_temporary_id,
)
from dashsync.services.query_keys import OrderBy


logger = logging.getLogger(__name__)


class MemoryChannel:
    def __init__(
        self,
        backend: "InMemoryBackend",
        table: str,
        filter: str | None,
        callback: ChangeCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        self._backend = backend
        self.table = table
        self.filter = filter
        self._callback = callback
        self._on_error = on_error
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        self._callback(event)

    def fail(self, exc: BaseException) -> None:
        # Transport loss: the channel is gone and the owner is told once.
        if self.closed:
            return
        self.closed = True
        self._backend._forget(self)
        if self._on_error is not None:
            self._on_error(exc)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._backend._forget(self)


class InMemoryBackend:
    """Deterministic in-process backend for development and tests.

    Rows live in per-table lists; inserts get integer ids. Change events are
    pushed to matching channels on the next loop iteration, mimicking a
    server push that lands after the write call returns.
    """

    name = "memory"

    def __init__(
        self,
        tables: Mapping[str, Iterable[Mapping[str, Any]]] | None = None,
        *,
        id_field: str = "id",
        unique: Mapping[str, Sequence[str]] | None = None,
        latency_s: float = 0.0,
    ) -> None:
        self._id_field = id_field
        self._tables: dict[str, list[dict[str, Any]]] = {
            table: [dict(row) for row in rows] for table, rows in (tables or {}).items()
        }
        self._unique = {table: tuple(columns) for table, columns in (unique or {}).items()}
        self._next_ids: dict[str, int] = {}
        for table, rows in self._tables.items():
            ids = [row.get(id_field) for row in rows if isinstance(row.get(id_field), int)]
            self._next_ids[table] = (max(ids) if ids else 0) + 1
        self.latency_s = latency_s
        self.calls: Counter[str] = Counter()
        self._faults: deque[tuple[str | None, BaseException]] = deque()
        self._channels: list[MemoryChannel] = []

    @property
    def open_channel_count(self) -> int:
        return len(self._channels)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self._tables.get(table, [])]

    def fail_next(self, exc: BaseException, *, times: int = 1, operation: str | None = None) -> None:
        """Queue failures for the next calls (``operation`` in query/mutate/subscribe, or any)."""
        for _ in range(times):
            self._faults.append((operation, exc))

    def _take_fault(self, operation: str) -> BaseException | None:
        for index, (target, exc) in enumerate(self._faults):
            if target is None or target == operation:
                del self._faults[index]
                return exc
        return None

    async def _simulate(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        else:
            await asyncio.sleep(0)
        fault = self._take_fault(operation)
        if fault is not None:
            raise fault

    async def query(
        self,
        table: str,
        filter: Mapping[str, Any] | None = None,
        order: Sequence[OrderBy] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        columns: str | None = None,
    ) -> list[dict[str, Any]]:
        await self._simulate("query")
        rows = [row for row in self._tables.get(table, []) if row_matches_filter(row, filter)]
        rows = sort_rows(rows, order)
        start = offset or 0
        rows = rows[start : start + limit] if limit is not None else rows[start:]
        return project_columns(rows, columns)

    def _find(self, table: str, row_id: Any) -> int | None:
        for index, row in enumerate(self._tables.get(table, [])):
            if row.get(self._id_field) == row_id:
                return index
        return None

    def _check_unique(self, table: str, candidate: Mapping[str, Any], skip_index: int | None = None) -> None:
        for column in self._unique.get(table, ()):
            value = candidate.get(column)
            if value is None:
                continue
            for index, row in enumerate(self._tables.get(table, [])):
                if index != skip_index and row.get(column) == value:
                    raise BackendRejectionError(
                        f'duplicate key value violates unique constraint "{table}_{column}_key"',
                        code="23505",
                        status_code=409,
                        details={"column": column},
                    )

    def _clean(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in (OPTIMISTIC_FLAG, MUTATION_ID_FIELD)}

    async def mutate(
        self,
        table: str,
        operation: MutationOperation | str,
        payload: Mapping[str, Any],
        row_id: Any = None,
    ) -> dict[str, Any] | None:
        operation = MutationOperation(operation)
        await self._simulate("mutate")
        payload = self._clean(payload)
        row_id = row_id if row_id is not None else payload.get(self._id_field)
        rows = self._tables.setdefault(table, [])
        index = self._find(table, row_id) if row_id is not None else None

        if operation is MutationOperation.UPSERT:
            operation = MutationOperation.UPDATE if index is not None else MutationOperation.INSERT

        if operation is MutationOperation.INSERT:
            row = dict(payload)
            if row.get(self._id_field) is None or is_temporary_id(row.get(self._id_field)):
                row[self._id_field] = self._next_ids.get(table, 1)
                self._next_ids[table] = row[self._id_field] + 1
            elif self._find(table, row[self._id_field]) is not None:
                raise BackendRejectionError(
                    f'duplicate key value violates unique constraint "{table}_pkey"',
                    code="23505",
                    status_code=409,
                )
            self._check_unique(table, row)
            rows.append(row)
            self._publish(ChangeEvent(table=table, event_type=ChangeType.INSERT, new=dict(row)))
            return dict(row)

        if index is None:
            if operation is MutationOperation.DELETE:
                return None
            raise BackendRejectionError(
                f"{table} row {row_id!r} not found",
                code="PGRST116",
                status_code=404,
            )

        if operation is MutationOperation.UPDATE:
            old = dict(rows[index])
            updated = {**old, **payload, self._id_field: old[self._id_field]}
            self._check_unique(table, updated, skip_index=index)
            rows[index] = updated
            self._publish(ChangeEvent(table=table, event_type=ChangeType.UPDATE, new=dict(updated), old=old))
            return dict(updated)

        old = rows.pop(index)
        self._publish(ChangeEvent(table=table, event_type=ChangeType.DELETE, old=dict(old)))
        return dict(old)

    async def subscribe_changes(
        self,
        table: str,
        filter: str | None,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> MemoryChannel:
        await self._simulate("subscribe")
        channel = MemoryChannel(self, table, filter, callback, on_error)
        self._channels.append(channel)
        return channel

    def publish(self, event: ChangeEvent) -> None:
        """Push a change made outside this backend (another tab or user)."""
        self._publish(event)

    def _publish(self, event: ChangeEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for channel in list(self._channels):
            if channel.table != event.table:
                continue
            if channel.filter and not row_matches_filter(event.record(), channel.filter):
                continue
            loop.call_soon(channel.deliver, event)

    def break_channels(self, exc: BaseException | None = None) -> int:
        # Simulate a dropped socket on every open channel.
        channels = list(self._channels)
        for channel in channels:
            channel.fail(exc or NetworkError("realtime channel dropped"))
        return len(channels)

    def _forget(self, channel: MemoryChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    async def aclose(self) -> None:
        for channel in list(self._channels):
            await channel.close()
