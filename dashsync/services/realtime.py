from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from dashsync.core.errors import SubscriptionStateError
from dashsync.providers.backend.base import ChangeCallback, ChangeEvent, ChannelHandle, DataBackend
from dashsync.services.resilience import RetryPolicy, realtime_retry_policy
from dashsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    INACTIVE = "INACTIVE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    CLOSED = "CLOSED"


_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.INACTIVE: {SubscriptionStatus.CONNECTING, SubscriptionStatus.CLOSED},
    SubscriptionStatus.CONNECTING: {
        SubscriptionStatus.CONNECTED,
        SubscriptionStatus.ERROR,
        SubscriptionStatus.CLOSED,
    },
    SubscriptionStatus.CONNECTED: {SubscriptionStatus.ERROR, SubscriptionStatus.CLOSED},
    SubscriptionStatus.ERROR: {SubscriptionStatus.CONNECTING, SubscriptionStatus.CLOSED},
    SubscriptionStatus.CLOSED: set(),
}


def subscription_key(table: str, filter: str | None = None) -> str:
    return f"{table}:{filter or '*'}"


@dataclass
class Subscription:
    id: str
    table: str
    filter: str | None
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    subscriber_count: int = 0
    last_updated: float = 0.0
    error_count: int = 0
    last_error: str | None = None
    last_event: str | None = None
    reconnect_attempts: int = 0
    handle: ChannelHandle | None = field(default=None, repr=False)
    consumers: dict[int, ChangeCallback | None] = field(default_factory=dict, repr=False)
    reconnect_task: asyncio.Task[Any] | None = field(default=None, repr=False)

    @property
    def key(self) -> str:
        return subscription_key(self.table, self.filter)

    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "filter": self.filter,
            "status": self.status.value,
            "subscriber_count": self.subscriber_count,
            "last_updated": self.last_updated,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_event": self.last_event,
            "reconnect_attempts": self.reconnect_attempts,
        }


class SubscriptionLease:
    """Disposer for one consumer's interest in a subscription.

    ``await lease.release()`` (or ``await lease()``) drops the interest; the
    channel closes when the last lease is released. Releasing twice is a no-op.
    """

    def __init__(self, manager: "RealtimeSubscriptionManager", subscription: Subscription, token: int) -> None:
        self._manager = manager
        self._subscription = subscription
        self._token = token
        self._released = False

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    @property
    def status(self) -> SubscriptionStatus:
        return self._subscription.status

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._manager._release(self._subscription, self._token)

    async def __call__(self) -> None:
        await self.release()

    async def __aenter__(self) -> "SubscriptionLease":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()


class RealtimeSubscriptionManager:
    """Own one change channel per (table, filter) and invalidate cache tags on changes.

    The internal map only caches live channels; lifetime is decided by the
    leases handed to consumers. Transport failures move a subscription to
    ERROR and schedule reconnection with the shared retry policy; consumers
    keep reading cached data meanwhile.
    """

    def __init__(
        self,
        backend: DataBackend,
        *,
        invalidate: Callable[[str], Any],
        retry_policy: RetryPolicy | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._backend = backend
        self._invalidate = invalidate
        self._policy = retry_policy or realtime_retry_policy()
        self._time = time_source or time.time
        self._subscriptions: dict[str, Subscription] = {}
        self._tokens = itertools.count(1)

    async def subscribe(
        self,
        table: str,
        filter: str | None = None,
        on_change: ChangeCallback | None = None,
    ) -> SubscriptionLease:
        key = subscription_key(table, filter)
        token = next(self._tokens)
        subscription = self._subscriptions.get(key)
        if subscription is not None:
            subscription.subscriber_count += 1
            subscription.consumers[token] = on_change
            subscription.last_updated = self._time()
            logger.debug("realtime_subscription_shared key=%s subscribers=%s", key, subscription.subscriber_count)
            return SubscriptionLease(self, subscription, token)

        subscription = Subscription(
            id=uuid4().hex,
            table=table,
            filter=filter,
            subscriber_count=1,
            last_updated=self._time(),
        )
        subscription.consumers[token] = on_change
        self._subscriptions[key] = subscription
        self._publish_gauge()
        lease = SubscriptionLease(self, subscription, token)
        self._transition(subscription, SubscriptionStatus.CONNECTING)
        await self._open_channel(subscription)
        if subscription.status is SubscriptionStatus.ERROR:
            self._schedule_reconnect(subscription)
        return lease

    def _transition(self, subscription: Subscription, target: SubscriptionStatus) -> None:
        current = subscription.status
        if current is target:
            return
        if target not in _TRANSITIONS[current]:
            raise SubscriptionStateError(
                f"subscription {subscription.key} cannot move from {current.value} to {target.value}"
            )
        subscription.status = target
        subscription.last_updated = self._time()
        logger.info(
            "realtime_status key=%s from=%s to=%s",
            subscription.key,
            current.value,
            target.value,
        )
        increment_counter(f"realtime_transition_total.{target.value.lower()}")

    async def _open_channel(self, subscription: Subscription) -> None:
        try:
            handle = await self._backend.subscribe_changes(
                subscription.table,
                subscription.filter,
                lambda event: self._on_change(subscription, event),
                lambda exc: self._on_transport_error(subscription, exc),
            )
        except Exception as exc:  # noqa: BLE001 - channel failures surface as ERROR status, not consumer errors
            if subscription.status is SubscriptionStatus.CLOSED:
                return
            self._record_error(subscription, exc)
            self._transition(subscription, SubscriptionStatus.ERROR)
            return
        if subscription.status is not SubscriptionStatus.CONNECTING:
            # Released (or failed) while the channel was opening; do not leak it.
            await self._close_handle(subscription, handle)
            return
        subscription.handle = handle
        self._transition(subscription, SubscriptionStatus.CONNECTED)

    def _record_error(self, subscription: Subscription, exc: BaseException) -> None:
        subscription.error_count += 1
        subscription.last_error = str(exc) or exc.__class__.__name__
        logger.warning(
            "realtime_channel_error key=%s errors=%s error=%s",
            subscription.key,
            subscription.error_count,
            subscription.last_error,
        )

    def _on_change(self, subscription: Subscription, event: ChangeEvent) -> None:
        if subscription.status is SubscriptionStatus.CLOSED:
            return
        subscription.last_updated = self._time()
        subscription.last_event = event.event_type.value
        increment_counter("realtime_events_total")
        # Coarse invalidation: the whole table is refetched on next read.
        self._invalidate(subscription.table)
        for callback in list(subscription.consumers.values()):
            if callback is None:
                continue
            try:
                callback(event)
            except Exception:  # noqa: BLE001 - consumer callbacks must not break delivery to others
                logger.exception("realtime_consumer_failed key=%s", subscription.key)

    def _on_transport_error(self, subscription: Subscription, exc: BaseException) -> None:
        if subscription.status not in (SubscriptionStatus.CONNECTED, SubscriptionStatus.CONNECTING):
            return
        self._record_error(subscription, exc)
        self._transition(subscription, SubscriptionStatus.ERROR)
        self._schedule_reconnect(subscription)

    def _schedule_reconnect(self, subscription: Subscription) -> None:
        task = subscription.reconnect_task
        if task is not None and not task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("realtime_reconnect_skipped_no_loop key=%s", subscription.key)
            return
        subscription.reconnect_task = loop.create_task(self._reconnect(subscription))

    async def _reconnect(self, subscription: Subscription) -> None:
        while subscription.status is SubscriptionStatus.ERROR:
            if subscription.reconnect_attempts >= max(self._policy.max_attempts, 1):
                logger.warning(
                    "realtime_reconnect_exhausted key=%s attempts=%s",
                    subscription.key,
                    subscription.reconnect_attempts,
                )
                return
            subscription.reconnect_attempts += 1
            await asyncio.sleep(self._policy.delay_s(subscription.reconnect_attempts))
            if subscription.status is not SubscriptionStatus.ERROR:
                return
            stale = subscription.handle
            subscription.handle = None
            if stale is not None:
                await self._close_handle(subscription, stale)
            increment_counter("realtime_reconnects_total")
            self._transition(subscription, SubscriptionStatus.CONNECTING)
            await self._open_channel(subscription)
            if subscription.status is SubscriptionStatus.CONNECTED:
                subscription.reconnect_attempts = 0
                # Events may have been missed while the channel was down.
                self._invalidate(subscription.table)
                return

    async def reconnect(self, table: str, filter: str | None = None) -> bool:
        """Restart reconnection for a subscription left in ERROR after exhausting attempts."""
        subscription = self._subscriptions.get(subscription_key(table, filter))
        if subscription is None or subscription.status is not SubscriptionStatus.ERROR:
            return False
        subscription.reconnect_attempts = 0
        self._schedule_reconnect(subscription)
        return True

    async def _close_handle(self, subscription: Subscription, handle: ChannelHandle) -> None:
        try:
            await handle.close()
        except Exception as exc:  # noqa: BLE001 - closing a dead channel must not block teardown
            logger.warning("realtime_channel_close_failed key=%s", subscription.key, exc_info=exc)

    async def _release(self, subscription: Subscription, token: int) -> None:
        if subscription.status is SubscriptionStatus.CLOSED:
            return
        subscription.consumers.pop(token, None)
        subscription.subscriber_count = max(0, subscription.subscriber_count - 1)
        subscription.last_updated = self._time()
        if subscription.subscriber_count > 0:
            return
        await self._teardown(subscription)

    async def _teardown(self, subscription: Subscription) -> None:
        if self._subscriptions.get(subscription.key) is subscription:
            del self._subscriptions[subscription.key]
        self._transition(subscription, SubscriptionStatus.CLOSED)
        task = subscription.reconnect_task
        subscription.reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        handle = subscription.handle
        subscription.handle = None
        if handle is not None:
            await self._close_handle(subscription, handle)
        self._publish_gauge()

    def get(self, table: str, filter: str | None = None) -> Subscription | None:
        return self._subscriptions.get(subscription_key(table, filter))

    def status(self, table: str, filter: str | None = None) -> SubscriptionStatus:
        subscription = self.get(table, filter)
        return subscription.status if subscription is not None else SubscriptionStatus.INACTIVE

    def list_subscriptions(self) -> list[dict[str, Any]]:
        return [subscription.info() for subscription in self._subscriptions.values()]

    def _publish_gauge(self) -> None:
        set_gauge("realtime_active_subscriptions", float(len(self._subscriptions)))

    async def close_all(self) -> None:
        # Manager teardown (logout, shutdown, reload): close every channel regardless of leases.
        for subscription in list(self._subscriptions.values()):
            subscription.consumers.clear()
            subscription.subscriber_count = 0
            await self._teardown(subscription)
