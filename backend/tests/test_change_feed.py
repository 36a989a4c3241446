from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from typing import Any

import pytest

from app.monitoring.metrics import change_publish_errors_total, realtime_transport_restarts_total
from parley.realtime import (
    BrokerConfig,
    ChangeAction,
    ChangeEvent,
    ChangeFeed,
    FilterSyntaxError,
    Predicate,
    RedisTransport,
    TransportUnavailableError,
    format_filter,
    parse_filter,
)
from parley.realtime.transport import CHANGES_TOPIC


def _message_event(channel_id: int, message_id: int = 1, action: ChangeAction = ChangeAction.INSERT) -> ChangeEvent:
    record = {"id": message_id, "channel_id": channel_id, "parent_id": None, "content": "hi"}
    if action == ChangeAction.DELETE:
        return ChangeEvent(table="messages", action=action, old_record=record)
    return ChangeEvent(table="messages", action=action, record=record)


def test_parse_filter_variants() -> None:
    assert parse_filter("messages", "channel_id=eq.5") == Predicate("messages", "channel_id", "eq", ("5",))
    assert parse_filter("message_reactions", "message_id=in.(1, 2,3)") == Predicate(
        "message_reactions", "message_id", "in", ("1", "2", "3")
    )
    assert parse_filter("users", None) == Predicate("users")
    assert format_filter("message_id", [1, 2]) == "message_id=in.(1,2)"
    assert format_filter("channel_id", 7) == "channel_id=eq.7"

    with pytest.raises(FilterSyntaxError):
        parse_filter("secrets", "id=eq.1")
    with pytest.raises(FilterSyntaxError):
        parse_filter("messages", "channel_id=gt.5")
    with pytest.raises(FilterSyntaxError):
        parse_filter("messages", "message_id=in.()")


def test_predicate_matches_new_or_old_row() -> None:
    predicate = parse_filter("messages", "channel_id=eq.5")

    assert predicate.matches(_message_event(5))
    assert predicate.matches(_message_event(5, action=ChangeAction.DELETE))
    assert not predicate.matches(_message_event(6))
    assert not parse_filter("channels", None).matches(_message_event(5))


def test_change_event_round_trips_through_dict() -> None:
    event = _message_event(3, message_id=9, action=ChangeAction.UPDATE)

    restored = ChangeEvent.from_dict(event.to_dict())

    assert restored.table == "messages"
    assert restored.action is ChangeAction.UPDATE
    assert restored.record == event.record
    assert restored.commit_timestamp == event.commit_timestamp


@pytest.mark.anyio
async def test_feed_delivers_only_matching_events() -> None:
    feed = ChangeFeed()
    received: list[ChangeEvent] = []

    async def collect(event: ChangeEvent) -> None:
        received.append(event)

    subscription = feed.subscribe(parse_filter("messages", "channel_id=eq.1"), collect)
    await feed.publish(_message_event(1, message_id=10))
    await feed.publish(_message_event(2, message_id=11))
    feed.unsubscribe(subscription)
    await feed.publish(_message_event(1, message_id=12))

    assert [event.record["id"] for event in received] == [10]
    assert feed.subscriber_count() == 0


@pytest.mark.anyio
async def test_failing_subscriber_does_not_block_others(caplog) -> None:
    feed = ChangeFeed()
    received: list[ChangeEvent] = []

    async def explode(event: ChangeEvent) -> None:
        raise RuntimeError("subscriber bug")

    async def collect(event: ChangeEvent) -> None:
        received.append(event)

    feed.subscribe(Predicate("messages"), explode)
    feed.subscribe(Predicate("messages"), collect)

    with caplog.at_level(logging.ERROR):
        await feed.publish(_message_event(1))

    assert len(received) == 1
    assert "Change subscriber failed" in caplog.text


class UnavailableTransport:
    node_id = "node-a"
    configured = True

    def __init__(self) -> None:
        self.handler = None

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def subscribe(self, topic: str, handler) -> SimpleNamespace:
        self.handler = handler

        async def close() -> None:
            return None

        return SimpleNamespace(close=close)

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        raise TransportUnavailableError("Redis backend is unavailable")


@pytest.mark.anyio
async def test_publish_failure_is_logged_and_delivered_locally(caplog) -> None:
    feed = ChangeFeed(UnavailableTransport())  # type: ignore[arg-type]
    await feed.start()
    received: list[ChangeEvent] = []

    async def collect(event: ChangeEvent) -> None:
        received.append(event)

    feed.subscribe(Predicate("messages"), collect)
    before = change_publish_errors_total.value("redis", "unavailable")

    with caplog.at_level(logging.WARNING):
        await feed.publish(_message_event(1))
        await feed.publish(_message_event(1, message_id=2))

    assert len(received) == 2
    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "delivering locally only" in warnings[0].getMessage()
    assert change_publish_errors_total.value("redis", "unavailable") == before + 2
    await feed.stop()


@pytest.mark.anyio
async def test_remote_events_skip_own_origin() -> None:
    transport = UnavailableTransport()
    feed = ChangeFeed(transport)  # type: ignore[arg-type]
    await feed.start()
    received: list[ChangeEvent] = []

    async def collect(event: ChangeEvent) -> None:
        received.append(event)

    feed.subscribe(Predicate("messages"), collect)
    await transport.handler({"origin": feed.node_id, "event": _message_event(1, 1).to_dict()})
    await transport.handler({"origin": "node-b", "event": _message_event(1, 2).to_dict()})
    await transport.handler({"origin": "node-b", "event": {"table": "messages"}})

    assert [event.record["id"] for event in received] == [2]


class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        if not self._redis.online:
            raise ConnectionError("offline")
        self._channels.add(channel)
        self._redis.register(channel, self)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self._channels:
            self._redis.unregister(channel, self)
            self._channels.discard(channel)

    async def aclose(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeRedis:
    def __init__(self) -> None:
        self.online = True
        self._pubsubs: dict[str, set[FakePubSub]] = {}

    async def ping(self) -> None:
        if not self.online:
            raise ConnectionError("offline")

    async def publish(self, channel: str, payload: str) -> None:
        if not self.online:
            raise ConnectionError("offline")
        for pubsub in list(self._pubsubs.get(channel, set())):
            pubsub.push({"type": "message", "data": payload})

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def aclose(self) -> None:
        self.fail()

    def register(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.setdefault(channel, set()).add(pubsub)

    def unregister(self, channel: str, pubsub: FakePubSub) -> None:
        subscribers = self._pubsubs.get(channel)
        if subscribers:
            subscribers.discard(pubsub)

    def fail(self) -> None:
        self.online = False
        for subscribers in list(self._pubsubs.values()):
            for pubsub in list(subscribers):
                pubsub.push(None)
        self._pubsubs.clear()


class FakeRedisFactory:
    def __init__(self) -> None:
        self.instances: list[FakeRedis] = []

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis()
        self.instances.append(client)
        return client


def _restarts() -> float:
    return realtime_transport_restarts_total.value("redis", "reader_stopped") + realtime_transport_restarts_total.value(
        "redis", "publish_failed"
    )


@pytest.mark.anyio
async def test_redis_transport_recovers_after_disconnect(monkeypatch) -> None:
    factory = FakeRedisFactory()
    monkeypatch.setattr("parley.realtime.transport.redis_asyncio", SimpleNamespace(from_url=factory.from_url))
    monkeypatch.setattr("parley.realtime.transport._RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("parley.realtime.transport._RECOVERY_MAX_DELAY", 0.05)
    restarts_before = _restarts()

    transport = RedisTransport(BrokerConfig(redis_url="redis://fake"))
    await transport.start()

    received: list[dict[str, Any]] = []
    received_event = asyncio.Event()

    async def handler(payload: dict[str, Any]) -> None:
        received.append(payload)
        received_event.set()

    subscription = await transport.subscribe(CHANGES_TOPIC, handler)
    await transport.publish(CHANGES_TOPIC, {"value": 1})
    await asyncio.wait_for(received_event.wait(), timeout=1.0)
    received_event.clear()
    received.clear()

    factory.instances[0].fail()
    await asyncio.sleep(0)
    with pytest.raises(TransportUnavailableError):
        await transport.publish(CHANGES_TOPIC, {"value": 2})

    async def publish_with_retry(payload: dict[str, Any]) -> None:
        for _ in range(40):
            try:
                await transport.publish(CHANGES_TOPIC, payload)
                return
            except TransportUnavailableError:
                await asyncio.sleep(0.05)
        raise AssertionError("Redis transport did not recover in time")

    await publish_with_retry({"value": 3})
    await asyncio.wait_for(received_event.wait(), timeout=1.5)

    assert received == [{"value": 3}]
    assert len(factory.instances) >= 2
    assert _restarts() >= restarts_before + 1

    await subscription.close()
    await transport.stop()
