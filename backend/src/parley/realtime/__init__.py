"""Server side of the realtime change feed."""

from __future__ import annotations

import uuid

from app.config import get_settings

from .events import (
    WATCHED_TABLES,
    ChangeAction,
    ChangeEvent,
    FilterSyntaxError,
    Predicate,
    format_filter,
    parse_filter,
)
from .feed import ChangeCallback, ChangeFeed, FeedSubscription
from .transport import BrokerConfig, RedisTransport, TransportUnavailableError

settings = get_settings()

_node_id = uuid.uuid4().hex

change_feed = ChangeFeed(
    RedisTransport(
        BrokerConfig(
            redis_url=settings.realtime_redis_url,
            redis_prefix=settings.realtime_redis_prefix,
            node_id=_node_id,
        )
    ),
    node_id=_node_id,
)


async def startup_realtime() -> None:
    await change_feed.start()


async def shutdown_realtime() -> None:
    await change_feed.stop()


def get_change_feed() -> ChangeFeed:
    return change_feed


__all__ = [
    "WATCHED_TABLES",
    "BrokerConfig",
    "ChangeAction",
    "ChangeCallback",
    "ChangeEvent",
    "ChangeFeed",
    "FeedSubscription",
    "FilterSyntaxError",
    "Predicate",
    "RedisTransport",
    "TransportUnavailableError",
    "change_feed",
    "format_filter",
    "get_change_feed",
    "parse_filter",
    "shutdown_realtime",
    "startup_realtime",
]
