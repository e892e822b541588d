from __future__ import annotations

import asyncio

import pytest

from dashsync.core.errors import NetworkError
from dashsync.providers.backend.base import ChangeEvent, ChangeType
from dashsync.providers.backend.changes import RedisChangeFeed
from dashsync.tests.utils.fakes import FakeRedis


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_publish_reaches_matching_subscribers() -> None:
    redis = FakeRedis()
    feed = RedisChangeFeed(redis, prefix="test:changes")
    received: list[ChangeEvent] = []
    handle = await feed.subscribe("entries", "user_id=eq.7", received.append)

    await feed.publish(ChangeEvent(table="entries", event_type=ChangeType.INSERT, new={"id": 1, "user_id": 7}))
    await feed.publish(ChangeEvent(table="entries", event_type=ChangeType.INSERT, new={"id": 2, "user_id": 8}))
    await feed.publish(ChangeEvent(table="categories", event_type=ChangeType.DELETE, old={"id": 1}))
    await _settle()

    assert [event.new["id"] for event in received] == [1]
    await handle.close()
    assert feed.subscription_count == 0


@pytest.mark.asyncio
async def test_malformed_messages_are_skipped() -> None:
    redis = FakeRedis()
    feed = RedisChangeFeed(redis, prefix="test:changes")
    received: list[ChangeEvent] = []
    handle = await feed.subscribe("entries", None, received.append)
    await redis.publish("test:changes:entries", "not json")
    await feed.publish(ChangeEvent(table="entries", event_type=ChangeType.UPDATE, new={"id": 1}))
    await _settle()
    assert len(received) == 1
    await handle.close()


@pytest.mark.asyncio
async def test_reader_failure_is_reported_once() -> None:
    redis = FakeRedis()
    feed = RedisChangeFeed(redis)
    errors: list[BaseException] = []
    handle = await feed.subscribe("entries", None, lambda event: None, errors.append)
    pubsub = redis.pubsubs[0]
    pubsub.queue.put_nowait(ConnectionResetError("socket closed"))
    await _settle()
    assert len(errors) == 1
    assert isinstance(errors[0], NetworkError)
    await handle.close()
    await handle.close()
    assert pubsub.closed


@pytest.mark.asyncio
async def test_subscribe_failure_is_network_error() -> None:
    redis = FakeRedis()
    redis.fail_subscribe = True
    with pytest.raises(NetworkError):
        await RedisChangeFeed(redis).subscribe("entries", None, lambda event: None)


@pytest.mark.asyncio
async def test_publish_failure_is_swallowed_and_logged() -> None:
    redis = FakeRedis()
    redis.fail_all = True
    feed = RedisChangeFeed(redis)
    assert await feed.publish(ChangeEvent(table="entries", event_type=ChangeType.DELETE, old={"id": 1})) == 0


@pytest.mark.asyncio
async def test_invalid_filter_is_rejected_before_connecting() -> None:
    redis = FakeRedis()
    with pytest.raises(ValueError):
        await RedisChangeFeed(redis).subscribe("entries", "bogus", lambda event: None)
    assert redis.pubsubs == []
