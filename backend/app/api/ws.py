"""WebSocket endpoint streaming change-feed events to clients."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.deps import get_user_from_token
from app.config import get_settings
from app.core.errors import ChatError, Forbidden, InvalidInput, NotFound
from app.database import get_db_session
from app.models import Channel, Message
from app.monitoring.metrics import realtime_connections
from app.services.access import is_member, require_member
from parley.realtime import (
    ChangeEvent,
    FeedSubscription,
    FilterSyntaxError,
    Predicate,
    get_change_feed,
    parse_filter,
)

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON unless the socket has gone away; returns whether it was sent."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            now = time.monotonic()
            idle_long_enough = now - last_activity >= interval and (
                last_ping_sent is None or now - last_ping_sent >= interval
            )
            if interval <= 0 or idle_long_enough:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


def _single_value(predicate: Predicate) -> str:
    if predicate.op != "eq" or len(predicate.values) != 1:
        raise InvalidInput(f"Only '{predicate.column}=eq.<id>' filters are allowed here")
    return predicate.values[0]


def _as_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise InvalidInput(f"'{value}' is not a valid id") from None


def _message_channel_ids(message_ids: list[int], db: Session) -> dict[int, int]:
    stmt = select(Message.id, Message.channel_id).where(Message.id.in_(message_ids))
    return dict(db.execute(stmt).all())


def authorize_subscription(predicate: Predicate, user_id: str, db: Session) -> Predicate:
    """Check the caller may see rows selected by ``predicate``.

    Returns the predicate to register, narrowed to the rows the caller can
    see where that applies.
    """

    table, column = predicate.table, predicate.column
    if table == "users":
        return predicate

    if table == "channels":
        if column is None:
            return predicate
        if column != "id":
            raise InvalidInput("Channel subscriptions filter on 'id'")
        for value in predicate.values:
            channel = db.get(Channel, _as_int(value))
            if channel is None:
                raise NotFound("Channel not found")
            if channel.is_private:
                require_member(channel.id, user_id, db)
        return predicate

    if table in ("messages", "channel_members") and column == "channel_id":
        for value in predicate.values:
            require_member(_as_int(value), user_id, db)
        return predicate

    if table == "channel_members" and column == "user_id":
        if predicate.values != (user_id,):
            raise Forbidden("Can only follow your own memberships")
        return predicate

    if table == "messages" and column in ("parent_id", "id"):
        message_id = _as_int(_single_value(predicate))
        channel_id = _message_channel_ids([message_id], db).get(message_id)
        if channel_id is None:
            raise NotFound("Message not found")
        require_member(channel_id, user_id, db)
        return predicate

    if table == "message_reactions" and column == "message_id":
        requested = [_as_int(value) for value in predicate.values]
        channels = _message_channel_ids(requested, db)
        allowed = tuple(
            str(message_id)
            for message_id in requested
            if message_id in channels and is_member(channels[message_id], user_id, db)
        )
        if not allowed:
            raise Forbidden("No visible messages in filter")
        return Predicate(table=table, column=column, op="in", values=allowed)

    raise InvalidInput(f"Unsupported filter for table '{table}'")


def can_receive(event: ChangeEvent, user_id: str, db: Session) -> bool:
    """Whether ``user_id`` may still see the row behind ``event``.

    Subscriptions are authorized once, but membership can be revoked while
    they stay open, so every channel-scoped event is checked again.
    """

    row = event.record or event.old_record or {}
    if event.table == "users":
        return True
    if event.table == "channel_members" and row.get("user_id") == user_id:
        return True
    if event.table == "channels":
        if not row.get("is_private"):
            return True
        channel_id = row.get("id")
    elif event.table == "message_reactions":
        message_id = row.get("message_id")
        if message_id is None:
            return False
        channel_id = _message_channel_ids([int(message_id)], db).get(int(message_id))
    else:
        channel_id = row.get("channel_id")
    if channel_id is None:
        return False
    return is_member(int(channel_id), user_id, db)


def _check_receive(event: ChangeEvent, user_id: str) -> bool:
    with get_db_session() as db:
        return can_receive(event, user_id, db)


async def _resolve_user_id(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None
    try:
        with get_db_session() as db:
            return get_user_from_token(token, db).id
    except ChatError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


@router.websocket("/changes")
async def websocket_changes(websocket: WebSocket) -> None:
    """Stream change events matching the client's subscriptions."""

    user_id = await _resolve_user_id(websocket)
    if user_id is None:
        return

    await websocket.accept()
    realtime_connections.labels().inc()
    feed = get_change_feed()
    subscriptions: dict[str, FeedSubscription] = {}

    def make_callback(client_id: str) -> Callable[[ChangeEvent], Awaitable[None]]:
        async def deliver(event: ChangeEvent) -> None:
            if not await run_in_threadpool(_check_receive, event, user_id):
                return
            await safe_send_json(websocket, {"type": "change", "id": client_id, "event": event.to_dict()})

        return deliver

    async def handle_subscribe(payload: dict[str, Any]) -> None:
        client_id = str(payload.get("id") or "")
        if not client_id:
            await safe_send_json(websocket, {"type": "error", "detail": "Subscription id is required"})
            return
        try:
            predicate = parse_filter(str(payload.get("table", "")), payload.get("filter"))
            with get_db_session() as db:
                predicate = authorize_subscription(predicate, user_id, db)
        except FilterSyntaxError as exc:
            await safe_send_json(websocket, {"type": "error", "id": client_id, "detail": str(exc)})
            return
        except ChatError as exc:
            await safe_send_json(websocket, {"type": "error", "id": client_id, "detail": exc.detail})
            return
        previous = subscriptions.pop(client_id, None)
        if previous is not None:
            feed.unsubscribe(previous)
        subscriptions[client_id] = feed.subscribe(predicate, make_callback(client_id))
        await safe_send_json(websocket, {"type": "subscribed", "id": client_id})

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_receive_timeout_seconds,
            ping_interval_seconds=settings.websocket_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await safe_send_json(websocket, {"type": "error", "detail": "Invalid payload"})
                continue
            if not isinstance(payload, dict):
                await safe_send_json(websocket, {"type": "error", "detail": "Invalid payload"})
                continue

            message_type = payload.get("type")
            if message_type == "subscribe":
                await handle_subscribe(payload)
            elif message_type == "unsubscribe":
                subscription = subscriptions.pop(str(payload.get("id") or ""), None)
                if subscription is not None:
                    feed.unsubscribe(subscription)
            elif message_type == "ping":
                await safe_send_json(websocket, {"type": "pong"})
            elif message_type == "pong":
                continue
            else:
                await safe_send_json(websocket, {"type": "error", "detail": "Unknown message type"})
    finally:
        for subscription in subscriptions.values():
            feed.unsubscribe(subscription)
        subscriptions.clear()
        realtime_connections.labels().dec()
