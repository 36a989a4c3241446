"""Where change events come from: the in-process feed or the websocket."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from parley.realtime import ChangeEvent, ChangeFeed, parse_filter

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class SourceSubscription(Protocol):
    async def close(self) -> None: ...


class ChangeSource(Protocol):
    async def subscribe(self, table: str, filter: str | None, handler: ChangeHandler) -> SourceSubscription: ...


class SubscriptionRejected(Exception):
    """The server refused a subscription request."""


class _FeedSubscription:
    def __init__(self, feed: ChangeFeed, subscription: Any) -> None:
        self._feed = feed
        self._subscription = subscription

    async def close(self) -> None:
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None


class FeedChangeSource:
    """Subscribe straight to a :class:`ChangeFeed` in the same process."""

    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed

    async def subscribe(self, table: str, filter: str | None, handler: ChangeHandler) -> SourceSubscription:
        predicate = parse_filter(table, filter)
        return _FeedSubscription(self.feed, self.feed.subscribe(predicate, handler))


class _SocketSubscription:
    def __init__(self, source: "WebSocketChangeSource", subscription_id: str) -> None:
        self._source = source
        self.id = subscription_id

    async def close(self) -> None:
        await self._source.unsubscribe(self.id)


class WebSocketChangeSource:
    """Multiplex change subscriptions over one ``/ws/changes`` connection.

    Reconnecting is left to the caller: when the socket drops the reader
    stops and every handler goes quiet until :meth:`connect` is called again.
    """

    def __init__(self, url: str, *, token: str, open_timeout: float = 10.0, reply_timeout: float = 10.0) -> None:
        self.url = url
        self.token = token
        self.open_timeout = open_timeout
        self.reply_timeout = reply_timeout
        self._websocket: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._handlers: dict[str, ChangeHandler] = {}
        self._pending: dict[str, asyncio.Future[None]] = {}
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._reader is not None and not self._reader.done()

    async def connect(self) -> None:
        separator = "&" if "?" in self.url else "?"
        self._websocket = await websockets.connect(
            f"{self.url}{separator}token={self.token}",
            open_timeout=self.open_timeout,
        )
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None
        self._handlers.clear()
        self._fail_pending("Connection closed")

    async def subscribe(self, table: str, filter: str | None, handler: ChangeHandler) -> SourceSubscription:
        if self._websocket is None:
            await self.connect()
        subscription_id = f"sub-{next(self._ids)}"
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[subscription_id] = waiter
        self._handlers[subscription_id] = handler
        await self._send({"type": "subscribe", "id": subscription_id, "table": table, "filter": filter})
        try:
            await asyncio.wait_for(waiter, timeout=self.reply_timeout)
        except BaseException:
            self._handlers.pop(subscription_id, None)
            raise
        finally:
            self._pending.pop(subscription_id, None)
        return _SocketSubscription(self, subscription_id)

    async def unsubscribe(self, subscription_id: str) -> None:
        if self._handlers.pop(subscription_id, None) is None:
            return
        with contextlib.suppress(ConnectionClosed):
            await self._send({"type": "unsubscribe", "id": subscription_id})

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._websocket is None:
            raise SubscriptionRejected("Not connected")
        await self._websocket.send(json.dumps(payload))

    def _fail_pending(self, detail: str) -> None:
        for waiter in self._pending.values():
            if not waiter.done():
                waiter.set_exception(SubscriptionRejected(detail))

    async def _read_loop(self) -> None:
        try:
            async for raw in self._websocket:
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed frame from change feed")
                    continue
                await self._dispatch(payload)
        except ConnectionClosed as exc:
            logger.warning("Change feed connection closed: %s", exc)
        finally:
            self._fail_pending("Connection closed")

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        subscription_id = payload.get("id")
        if message_type == "ping":
            await self._send({"type": "pong"})
        elif message_type == "subscribed":
            waiter = self._pending.get(subscription_id)
            if waiter is not None and not waiter.done():
                waiter.set_result(None)
        elif message_type == "error":
            waiter = self._pending.get(subscription_id)
            if waiter is not None and not waiter.done():
                waiter.set_exception(SubscriptionRejected(str(payload.get("detail"))))
            else:
                logger.warning("Change feed error: %s", payload.get("detail"))
        elif message_type == "change":
            handler = self._handlers.get(subscription_id)
            if handler is None:
                return
            try:
                event = ChangeEvent.from_dict(payload["event"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Discarded malformed change event")
                return
            try:
                await handler(event)
            except Exception:
                logger.exception("Change handler failed", extra={"subscription": subscription_id})


__all__ = [
    "ChangeHandler",
    "ChangeSource",
    "FeedChangeSource",
    "SourceSubscription",
    "SubscriptionRejected",
    "WebSocketChangeSource",
]
