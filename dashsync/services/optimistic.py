from __future__ import annotations

import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

from dashsync.core.errors import BackendTimeoutError


logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp_"
# Marker fields added to rows that only exist (or only look this way) on the client.
OPTIMISTIC_FLAG = "_optimistic"
MUTATION_ID_FIELD = "_mutation_id"

_ID_MAP_LIMIT = 1000


class MutationOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"


class MutationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def is_temporary_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class MutationRequest:
    table: str
    operation: MutationOperation | str
    payload: Mapping[str, Any] = field(default_factory=dict)
    row_id: Any = None


@dataclass
class PendingMutation:
    id: str
    table: str
    operation: MutationOperation
    optimistic_payload: dict[str, Any]
    row_id: Any
    issued_at: float
    sequence: int
    status: MutationStatus = MutationStatus.PENDING
    error: BaseException | None = None
    server_row: Any = None

    @property
    def order_key(self) -> tuple[float, int]:
        return (self.issued_at, self.sequence)


MutationListener = Callable[[PendingMutation], None]


class OptimisticMutationTracker:
    """Record client-predicted writes and overlay them onto cached reads.

    ``apply`` is synchronous so the predicted state is visible before any
    network round-trip. Pending mutations are merged in issue order
    (``issued_at`` then a per-tracker sequence), never in resolution order.
    Confirmations may arrive out of order; until the table's cache entries are
    refetched a later optimistic state can briefly show over an earlier
    confirmed one.
    """

    def __init__(
        self,
        *,
        invalidate: Callable[[str], Any] | None = None,
        id_field: str = "id",
        pending_timeout_s: float = 30.0,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._invalidate = invalidate
        self._id_field = id_field
        self._pending_timeout_s = float(pending_timeout_s)
        self._time = time_source or time.time
        self._mutations: dict[str, PendingMutation] = {}
        self._id_map: OrderedDict[Any, Any] = OrderedDict()
        self._sequence = itertools.count()
        self._listeners: list[MutationListener] = []
        self._confirmed_total = 0
        self._failed_total = 0

    @property
    def id_field(self) -> str:
        return self._id_field

    def apply(self, request: MutationRequest) -> str:
        operation = MutationOperation(request.operation)
        mutation_id = f"{TEMP_ID_PREFIX}{uuid4().hex}"
        payload = dict(request.payload or {})
        row_id = request.row_id if request.row_id is not None else payload.get(self._id_field)
        row_id = self.resolve_id(row_id)

        if operation in (MutationOperation.UPDATE, MutationOperation.DELETE) and row_id is None:
            raise ValueError(f"{operation.value} mutation on {request.table} requires a row identity")
        if operation in (MutationOperation.INSERT, MutationOperation.UPSERT) and row_id is None:
            row_id = mutation_id
        if operation is MutationOperation.DELETE:
            payload = {self._id_field: row_id}
        elif operation is not MutationOperation.UPDATE:
            payload[self._id_field] = row_id
        payload[OPTIMISTIC_FLAG] = True
        payload[MUTATION_ID_FIELD] = mutation_id

        mutation = PendingMutation(
            id=mutation_id,
            table=request.table,
            operation=operation,
            optimistic_payload=payload,
            row_id=row_id,
            issued_at=self._time(),
            sequence=next(self._sequence),
        )
        self._mutations[mutation_id] = mutation
        logger.debug(
            "optimistic_mutation_applied id=%s table=%s op=%s row_id=%s",
            mutation_id,
            request.table,
            operation.value,
            row_id,
        )
        self._notify(mutation)
        return mutation_id

    def resolve_id(self, value: Any) -> Any:
        # Map a placeholder id to the server-assigned id once its insert is confirmed.
        if value is None:
            return None
        try:
            return self._id_map.get(value, value)
        except TypeError:
            return value

    def _matches(self, row: Mapping[str, Any], mutation: PendingMutation) -> bool:
        return self.resolve_id(row.get(self._id_field)) == mutation.row_id

    def _overlay(self, row: Mapping[str, Any], mutation: PendingMutation) -> dict[str, Any]:
        merged = {**row, **mutation.optimistic_payload}
        if self._id_field in row:
            merged[self._id_field] = row[self._id_field]
        return merged

    def merge_into(self, table: str, rows: Iterable[Any]) -> list[Any]:
        """Overlay pending mutations for ``table`` onto ``rows``.

        Returns a new list; neither the list nor its row mappings are modified.
        Non-mapping rows (scalars) pass through untouched.
        """
        result = list(rows)
        for mutation in self.pending(table):
            operation = mutation.operation
            if operation is MutationOperation.INSERT:
                result.append(dict(mutation.optimistic_payload))
            elif operation is MutationOperation.UPDATE:
                result = [
                    self._overlay(row, mutation) if isinstance(row, Mapping) and self._matches(row, mutation) else row
                    for row in result
                ]
            elif operation is MutationOperation.DELETE:
                result = [
                    row for row in result if not (isinstance(row, Mapping) and self._matches(row, mutation))
                ]
            elif operation is MutationOperation.UPSERT:
                index = next(
                    (
                        i
                        for i, row in enumerate(result)
                        if isinstance(row, Mapping) and self._matches(row, mutation)
                    ),
                    None,
                )
                if index is None:
                    result.append(dict(mutation.optimistic_payload))
                else:
                    result[index] = self._overlay(result[index], mutation)
        return result

    def confirm(self, mutation_id: str, server_row: Any = None) -> bool:
        """Retire a mutation the backend accepted; repeated calls are no-ops."""
        mutation = self._mutations.pop(mutation_id, None)
        if mutation is None:
            return False
        mutation.status = MutationStatus.CONFIRMED
        mutation.server_row = server_row
        if isinstance(server_row, Mapping) and mutation.operation in (
            MutationOperation.INSERT,
            MutationOperation.UPSERT,
        ):
            server_id = server_row.get(self._id_field)
            if server_id is not None and server_id != mutation.row_id:
                self._remember_id(mutation.row_id, server_id)
                # Later writes issued against the placeholder now target the real row.
                for other in self._mutations.values():
                    if other.row_id == mutation.row_id:
                        other.row_id = server_id
        self._confirmed_total += 1
        logger.debug("optimistic_mutation_confirmed id=%s table=%s", mutation_id, mutation.table)
        if self._invalidate is not None:
            self._invalidate(mutation.table)
        self._notify(mutation)
        return True

    def fail(self, mutation_id: str, error: BaseException) -> bool:
        """Drop a rejected mutation; the cache never held it, so nothing is rolled back there."""
        mutation = self._mutations.pop(mutation_id, None)
        if mutation is None:
            return False
        mutation.status = MutationStatus.FAILED
        mutation.error = error
        self._failed_total += 1
        logger.info(
            "optimistic_mutation_failed id=%s table=%s op=%s error=%s",
            mutation_id,
            mutation.table,
            mutation.operation.value,
            error,
        )
        self._notify(mutation)
        return True

    def expire_pending(self, now: float | None = None) -> list[str]:
        # Fail mutations whose originator never reported an outcome.
        now = self._time() if now is None else now
        expired = [
            mutation.id
            for mutation in self._mutations.values()
            if now - mutation.issued_at >= self._pending_timeout_s
        ]
        for mutation_id in expired:
            self.fail(
                mutation_id,
                BackendTimeoutError(f"mutation pending for more than {self._pending_timeout_s:.0f}s"),
            )
        return expired

    def _remember_id(self, temp_id: Any, server_id: Any) -> None:
        self._id_map[temp_id] = server_id
        while len(self._id_map) > _ID_MAP_LIMIT:
            self._id_map.popitem(last=False)

    def get(self, mutation_id: str) -> PendingMutation | None:
        return self._mutations.get(mutation_id)

    def pending(self, table: str | None = None) -> list[PendingMutation]:
        mutations = [m for m in self._mutations.values() if table is None or m.table == table]
        return sorted(mutations, key=lambda m: m.order_key)

    def pending_tables(self) -> set[str]:
        return {mutation.table for mutation in self._mutations.values()}

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MutationListener) -> None:
        self._listeners = [item for item in self._listeners if item is not listener]

    def _notify(self, mutation: PendingMutation) -> None:
        for listener in list(self._listeners):
            try:
                listener(mutation)
            except Exception:  # noqa: BLE001 - one broken listener must not block the others
                logger.exception("optimistic_listener_failed id=%s", mutation.id)

    def stats(self) -> dict[str, Any]:
        by_table: dict[str, int] = {}
        for mutation in self._mutations.values():
            by_table[mutation.table] = by_table.get(mutation.table, 0) + 1
        return {
            "pending": len(self._mutations),
            "confirmed_total": self._confirmed_total,
            "failed_total": self._failed_total,
            "by_table": by_table,
        }

    def clear(self) -> None:
        self._mutations.clear()
        self._id_map.clear()
        self._confirmed_total = 0
        self._failed_total = 0
