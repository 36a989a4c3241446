"""Process-wide change feed with optional cross-node fan-out."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.monitoring.metrics import (
    change_events_total,
    change_publish_errors_total,
    change_subscriptions,
)

from .events import ChangeEvent, Predicate
from .transport import CHANGES_TOPIC, RedisTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


@dataclass(slots=True)
class FeedSubscription:
    id: str
    predicate: Predicate
    callback: ChangeCallback


class ChangeFeed:
    """Deliver committed row changes to subscribers whose predicate matches.

    Events published here reach local subscribers directly. When a transport
    is attached they are also forwarded to other nodes, and events arriving
    from the transport are delivered locally unless this node sent them.
    """

    def __init__(self, transport: RedisTransport | None = None, *, node_id: str | None = None) -> None:
        self._transport = transport
        self._node_id = node_id or (transport.node_id if transport is not None else None) or uuid.uuid4().hex
        self._subscribers: dict[str, FeedSubscription] = {}
        self._remote: Subscription | None = None
        self._publish_warning_logged = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def distributed(self) -> bool:
        return self._remote is not None

    async def start(self) -> None:
        if self._transport is None or not self._transport.configured:
            logger.info("Change feed running in local-only mode")
            return
        try:
            await self._transport.start()
            self._remote = await self._transport.subscribe(CHANGES_TOPIC, self._handle_remote)
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable during startup; continuing without cross-node sync",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._remote = None

    async def stop(self) -> None:
        if self._remote is not None:
            await self._remote.close()
            self._remote = None
        if self._transport is not None:
            await self._transport.stop()

    def subscribe(self, predicate: Predicate, callback: ChangeCallback) -> FeedSubscription:
        subscription = FeedSubscription(id=uuid.uuid4().hex, predicate=predicate, callback=callback)
        self._subscribers[subscription.id] = subscription
        change_subscriptions.labels(predicate.table).inc()
        logger.debug("Change feed subscription added", extra={"predicate": predicate.describe()})
        return subscription

    def unsubscribe(self, subscription: FeedSubscription) -> None:
        if self._subscribers.pop(subscription.id, None) is not None:
            change_subscriptions.labels(subscription.predicate.table).dec()

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: ChangeEvent) -> None:
        change_events_total.labels(event.table, event.action.value, "local").inc()
        await self._deliver(event)
        if self._remote is None or self._transport is None:
            return
        message: dict[str, Any] = {"origin": self._node_id, "event": event.to_dict()}
        try:
            await self._transport.publish(CHANGES_TOPIC, message)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while publishing %s change on %s; delivering locally only",
                    event.action.value,
                    event.table,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            change_publish_errors_total.labels("redis", "unavailable").inc()
        else:
            self._publish_warning_logged = False

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self._node_id:
            return
        try:
            event = ChangeEvent.from_dict(message["event"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarded malformed remote change event")
            return
        change_events_total.labels(event.table, event.action.value, "remote").inc()
        await self._deliver(event)

    async def _deliver(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscribers.values()):
            if not subscription.predicate.matches(event):
                continue
            try:
                await subscription.callback(event)
            except Exception:
                logger.exception(
                    "Change subscriber failed",
                    extra={"subscription": subscription.id, "table": event.table},
                )
