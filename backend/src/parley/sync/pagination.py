"""Backwards pagination through a channel's history."""

from __future__ import annotations

import logging
from datetime import datetime

from parley.cursors import MessageCursor

from .client import ChatApiClient
from .state import ChannelViewState, MessageView

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class PaginationCursorManager:
    """Load a channel's history one page at a time, newest first.

    The cursor is the ``(created_at, id)`` of the oldest loaded message. A page
    shorter than ``page_size`` means the start of the channel was reached.
    """

    def __init__(self, state: ChannelViewState, client: ChatApiClient, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.state = state
        self.client = client
        self.page_size = page_size
        self._loading = False

    @property
    def has_more(self) -> bool:
        return self.state.has_more

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def oldest_created_at(self) -> datetime | None:
        return self.state.oldest_created_at()

    @property
    def cursor(self) -> MessageCursor | None:
        oldest = self.state.oldest_loaded()
        if oldest is None:
            return None
        return MessageCursor(oldest.created_at, int(oldest.id))

    async def load_initial(self) -> list[MessageView]:
        """Replace the view with the latest page."""

        self._loading = True
        try:
            payload = await self.client.list_messages(
                self.state.channel_id, limit=self.page_size, direction="older"
            )
        finally:
            self._loading = False
        page = [MessageView.from_payload(item) for item in payload]
        pending = [message for message in self.state.messages if message.is_temporary]
        self.state.messages = page + pending
        self.state.has_more = len(page) >= self.page_size
        return page

    async def load_older(self) -> list[MessageView]:
        """Prepend the page before the oldest loaded message.

        Returns the newly added messages; an empty list when history is
        exhausted or another load is still running.
        """

        if self._loading or not self.state.has_more:
            return []
        self._loading = True
        try:
            payload = await self.client.list_messages(
                self.state.channel_id,
                cursor=self.cursor,
                limit=self.page_size,
                direction="older",
            )
        finally:
            self._loading = False

        page = [MessageView.from_payload(item) for item in payload]
        if len(page) < self.page_size:
            self.state.has_more = False
        known = {message.id for message in self.state.messages}
        fresh = [message for message in page if message.id not in known]
        self.state.messages = fresh + self.state.messages
        logger.debug(
            "Loaded %s older messages for channel %s", len(fresh), self.state.channel_id
        )
        return fresh


__all__ = ["DEFAULT_PAGE_SIZE", "PaginationCursorManager"]
