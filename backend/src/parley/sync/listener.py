"""Re-fetch and reconcile views when the change feed reports activity."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from parley.cursors import MessageCursor
from parley.reactions import reactions_from_rows_payload
from parley.realtime import ChangeEvent, format_filter

from .client import ApiError, ChatApiClient
from .reconcile import (
    MessagesSnapshot,
    ReactionsSnapshot,
    Reconciler,
    RepliesSnapshot,
    ReplaceReconciler,
)
from .source import ChangeSource, SourceSubscription
from .state import ChannelViewState, MessageView

logger = logging.getLogger(__name__)

WINDOW_KEY = "window"
WINDOW_PAGE_SIZE = 100


class _TaskOwner:
    """Tracks the re-fetch tasks a listener starts so they can be torn down."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.closed = False

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self.closed:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait until every re-fetch started so far has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


def _event_row(event: ChangeEvent) -> dict[str, Any]:
    return event.record or event.old_record or {}


class ChannelChangeListener(_TaskOwner):
    """Keep one mounted channel view in step with the server.

    Events are only used as a signal: the listener re-fetches the loaded
    message window, or the reactions of the affected message, and hands the
    result to the reconciler.
    """

    def __init__(
        self,
        state: ChannelViewState,
        client: ChatApiClient,
        source: ChangeSource,
        *,
        reconciler: Reconciler | None = None,
        initial_page_size: int = 50,
    ) -> None:
        super().__init__()
        self.state = state
        self.client = client
        self.source = source
        self.reconciler = reconciler or ReplaceReconciler(state)
        self.initial_page_size = initial_page_size
        self._messages_subscription: SourceSubscription | None = None
        self._reactions_subscription: SourceSubscription | None = None
        self._reaction_ids: tuple[int, ...] = ()

    async def start(self) -> None:
        self._messages_subscription = await self.source.subscribe(
            "messages", format_filter("channel_id", self.state.channel_id), self._on_message_change
        )
        await self.sync_reaction_subscription()

    async def close(self) -> None:
        self.closed = True
        for subscription in (self._messages_subscription, self._reactions_subscription):
            if subscription is not None:
                await subscription.close()
        self._messages_subscription = None
        self._reactions_subscription = None
        self._reaction_ids = ()
        await self._cancel_tasks()

    async def sync_reaction_subscription(self) -> None:
        """Point the reaction subscription at the currently loaded messages."""

        if self.closed:
            return
        ids = tuple(sorted(self.state.server_ids()))
        if ids == self._reaction_ids:
            return
        if self._reactions_subscription is not None:
            await self._reactions_subscription.close()
            self._reactions_subscription = None
        self._reaction_ids = ids
        if ids:
            self._reactions_subscription = await self.source.subscribe(
                "message_reactions", format_filter("message_id", list(ids)), self._on_reaction_change
            )

    async def _on_message_change(self, event: ChangeEvent) -> None:
        parent_id = _event_row(event).get("parent_id")
        # a reply only changes its parent's reply count
        if parent_id is not None and parent_id not in self.state.server_ids():
            return
        self._spawn(self.refresh_window())

    async def _on_reaction_change(self, event: ChangeEvent) -> None:
        message_id = _event_row(event).get("message_id")
        if message_id is None:
            return
        self._spawn(self.refresh_reactions(int(message_id)))

    async def _fetch_window(self) -> list[MessageView]:
        oldest = self.state.oldest_loaded()
        if oldest is None:
            payload = await self.client.list_messages(
                self.state.channel_id, limit=self.initial_page_size, direction="older"
            )
            return [MessageView.from_payload(item) for item in payload]

        messages: list[MessageView] = []
        # one id below the oldest loaded row; the bound is exclusive
        cursor = MessageCursor(oldest.created_at, int(oldest.id) - 1)
        while True:
            payload = await self.client.list_messages(
                self.state.channel_id, cursor=cursor, limit=WINDOW_PAGE_SIZE, direction="newer"
            )
            page = [MessageView.from_payload(item) for item in payload]
            messages.extend(page)
            if len(page) < WINDOW_PAGE_SIZE:
                return messages
            cursor = MessageCursor(page[-1].created_at, int(page[-1].id))

    async def refresh_window(self) -> None:
        tag = self.state.requests.next(WINDOW_KEY)
        try:
            messages = await self._fetch_window()
        except ApiError as exc:
            logger.warning("Re-fetching channel %s failed: %s", self.state.channel_id, exc)
            return
        if self.closed or not self.state.requests.is_current(WINDOW_KEY, tag):
            return
        self.reconciler.reconcile(MessagesSnapshot(messages))
        await self.sync_reaction_subscription()

    async def refresh_reactions(self, message_id: int) -> None:
        key = ("reactions", message_id)
        tag = self.state.requests.next(key)
        try:
            rows = await self.client.list_reactions(self.state.channel_id, message_id)
        except ApiError as exc:
            logger.warning("Re-fetching reactions of message %s failed: %s", message_id, exc)
            return
        if self.closed or not self.state.requests.is_current(key, tag):
            return
        self.reconciler.reconcile(ReactionsSnapshot(message_id, reactions_from_rows_payload(rows)))


class ThreadChangeListener(_TaskOwner):
    """Keep the replies of one open thread in step with the server."""

    def __init__(
        self,
        state: ChannelViewState,
        client: ChatApiClient,
        source: ChangeSource,
        parent_id: int,
        *,
        reconciler: Reconciler | None = None,
    ) -> None:
        super().__init__()
        self.state = state
        self.client = client
        self.source = source
        self.parent_id = parent_id
        self.reconciler = reconciler or ReplaceReconciler(state)
        self._subscription: SourceSubscription | None = None

    @property
    def _key(self) -> tuple[str, int]:
        return ("replies", self.parent_id)

    async def start(self) -> None:
        self.state.open_thread(self.parent_id)
        self._subscription = await self.source.subscribe(
            "messages", format_filter("parent_id", self.parent_id), self._on_reply_change
        )
        await self.refresh()

    async def close(self) -> None:
        self.closed = True
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        await self._cancel_tasks()
        self.state.close_thread(self.parent_id)

    async def _on_reply_change(self, event: ChangeEvent) -> None:
        self._spawn(self.refresh())

    async def refresh(self) -> None:
        tag = self.state.requests.next(self._key)
        try:
            payload = await self.client.list_replies(self.state.channel_id, self.parent_id)
        except ApiError as exc:
            logger.warning("Re-fetching thread %s failed: %s", self.parent_id, exc)
            return
        if self.closed or not self.state.requests.is_current(self._key, tag):
            return
        replies = [MessageView.from_payload(item) for item in payload]
        self.reconciler.reconcile(RepliesSnapshot(self.parent_id, replies))


__all__ = ["ChannelChangeListener", "ThreadChangeListener"]
