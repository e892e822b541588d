from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DedupStats:
    in_flight: int
    started: int
    shared: int
    failed: int


class RequestDeduplicator:
    """Collapse concurrent identical requests into one in-flight call.

    The deduplicator never caches settled values: once the shared call
    finishes (successfully or not) the key is forgotten and the next ``run``
    starts a fresh call. Callers await the shared task through
    ``asyncio.shield`` so one cancelled caller cannot cancel it for the rest.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task[Any]] = {}
        self._started = 0
        self._shared = 0
        self._failed = 0

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is not None:
            self._shared += 1
            logger.debug("dedup_shared key=%s", key)
            return await asyncio.shield(task)
        task = asyncio.ensure_future(fn())
        self._pending[key] = task
        self._started += 1
        task.add_done_callback(lambda done: self._settle(key, done))
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task[Any]) -> None:
        # Only drop the entry if it still points at this task (clear() may have replaced it).
        if self._pending.get(key) is task:
            del self._pending[key]
        if task.cancelled():
            return
        # Retrieve the exception so abandoned calls do not log "never retrieved".
        if task.exception() is not None:
            self._failed += 1

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def in_flight(self) -> list[str]:
        return sorted(self._pending.keys())

    def stats(self) -> DedupStats:
        return DedupStats(
            in_flight=len(self._pending),
            started=self._started,
            shared=self._shared,
            failed=self._failed,
        )

    def clear(self) -> None:
        # Forget in-flight calls without cancelling them; their results are simply not shared.
        self._pending.clear()
        self._started = 0
        self._shared = 0
        self._failed = 0
