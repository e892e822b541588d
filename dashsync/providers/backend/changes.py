from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from redis.exceptions import RedisError

from dashsync.core.errors import NetworkError
from dashsync.providers.backend.base import (
    ChangeCallback,
    ChangeEvent,
    ErrorCallback,
    parse_filter_expression,
    row_matches_filter,
)


logger = logging.getLogger(__name__)


class FeedSubscription:
    """One pub/sub connection reading change events for a single table."""

    def __init__(
        self,
        feed: "RedisChangeFeed",
        table: str,
        filter: str | None,
        callback: ChangeCallback,
        on_error: ErrorCallback | None,
        pubsub: Any,
    ) -> None:
        self._feed = feed
        self.table = table
        self.filter = filter
        self._callback = callback
        self._on_error = on_error
        self._pubsub = pubsub
        self._task: asyncio.Task[None] | None = None
        self.closed = False

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._read())

    async def _read(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = ChangeEvent.from_dict(json.loads(message["data"]))
                except (KeyError, TypeError, ValueError):
                    logger.warning("change_feed_message_invalid table=%s", self.table)
                    continue
                if event.table != self.table:
                    continue
                if self.filter and not row_matches_filter(event.record(), self.filter):
                    continue
                self._callback(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - transport loss is reported to the owner
            self._report(NetworkError(f"change feed for {self.table} failed: {exc}"))
            return
        self._report(NetworkError(f"change feed for {self.table} ended"))

    def _report(self, exc: NetworkError) -> None:
        if self.closed:
            return
        logger.warning("change_feed_reader_failed table=%s error=%s", self.table, exc)
        if self._on_error is not None:
            self._on_error(exc)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._forget(self)
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("change_feed_close_failed table=%s", self.table, exc_info=exc)


class RedisChangeFeed:
    """Change notifications over Redis pub/sub, one channel per table."""

    def __init__(self, redis: Any, prefix: str = "dashsync:changes") -> None:
        self._redis = redis
        self._prefix = prefix.rstrip(":")
        self._subscriptions: list[FeedSubscription] = []

    def channel(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(
        self,
        table: str,
        filter: str | None,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> FeedSubscription:
        if filter:
            # Reject malformed predicates before opening a connection.
            parse_filter_expression(filter)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self.channel(table))
        except (RedisError, OSError) as exc:
            raise NetworkError(f"change feed subscribe failed for {table}: {exc}") from exc
        subscription = FeedSubscription(self, table, filter, callback, on_error, pubsub)
        self._subscriptions.append(subscription)
        subscription.start()
        logger.debug("change_feed_subscribed table=%s filter=%s", table, filter)
        return subscription

    async def publish(self, event: ChangeEvent) -> int:
        # Best effort: a lost notification only delays invalidation until the next TTL.
        payload = json.dumps(event.to_dict(), default=str)
        try:
            receivers = await self._redis.publish(self.channel(event.table), payload)
        except (RedisError, OSError) as exc:
            logger.warning("change_feed_publish_failed table=%s", event.table, exc_info=exc)
            return 0
        return int(receivers or 0)

    def _forget(self, subscription: FeedSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def aclose(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
