"""Optimistic message sends and reaction toggles."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from parley.reactions import (
    ReactingUser,
    ReactionsByEmoji,
    reactions_from_payload,
    reactions_from_rows_payload,
    toggle_in_map,
)

from .client import ApiError, ChatApiClient
from .state import TEMP_ID_PREFIX, ChannelViewState, MessageView

logger = logging.getLogger(__name__)

Notifier = Callable[[str], None]

SEND_FAILED_MESSAGE = "Failed to send message"
REACTION_FAILED_MESSAGE = "Failed to update reaction. Please try again."
OPTIMISTIC_USER_NAME = "You"


def _log_notification(message: str) -> None:
    logger.info("Notification: %s", message)


def _reactions_key(message_id: int) -> tuple[str, int]:
    return ("reactions", message_id)


class OptimisticMutationEngine:
    """Apply user actions to the view first, then confirm them with the server."""

    def __init__(
        self,
        state: ChannelViewState,
        client: ChatApiClient,
        *,
        notifier: Notifier | None = None,
    ) -> None:
        self.state = state
        self.client = client
        self.notify = notifier or _log_notification
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}

    def _you(self) -> ReactingUser:
        return ReactingUser(id=self.state.user_id, name=OPTIMISTIC_USER_NAME)

    async def send_message(self, content: str | None = None, *, parent_id: int | None = None) -> MessageView | None:
        """Send ``content`` (the current draft when omitted).

        Returns the server's message, or ``None`` when nothing was sent or the
        send failed.
        """

        text = self.state.draft if content is None else content
        if not text or not text.strip():
            return None

        now = datetime.now(timezone.utc)
        temporary = MessageView(
            id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}",
            content=text,
            channel_id=self.state.channel_id,
            user_id=self.state.user_id,
            created_at=now,
            updated_at=now,
            parent_id=parent_id,
            user=self._you(),
        )
        self.state.add_temporary(temporary)
        if parent_id is None:
            self.state.draft = ""

        try:
            payload = await self.client.post_message(self.state.channel_id, text, parent_id=parent_id)
        except ApiError as exc:
            logger.warning("Sending message to channel %s failed: %s", self.state.channel_id, exc)
            self.state.discard(temporary.id)
            self.notify(SEND_FAILED_MESSAGE)
            return None

        message = MessageView.from_payload(payload)
        self.state.settle_temporary(temporary.id, message)
        return message

    async def toggle_reaction(self, message_id: int, emoji: str) -> ReactionsByEmoji | None:
        """Flip the local user's ``emoji`` on a message.

        Toggles of the same emoji on the same message run one after another.
        """

        lock = self._locks.setdefault((message_id, emoji), asyncio.Lock())
        async with lock:
            message = self.state.find(message_id)
            if message is None:
                return None
            previous = message.reactions
            message.reactions = toggle_in_map(previous, emoji, self._you())
            key = _reactions_key(message_id)
            tag = self.state.requests.next(key)

            try:
                payload = await self.client.toggle_reaction(self.state.channel_id, message_id, emoji)
            except ApiError as exc:
                logger.warning("Toggling %s on message %s failed: %s", emoji, message_id, exc)
                await self._restore_reactions(message_id, previous)
                self.notify(REACTION_FAILED_MESSAGE)
                return None

            reactions = reactions_from_payload(payload)
            current = self.state.find(message_id)
            if current is None:
                return reactions
            if self.state.requests.is_current(key, tag):
                current.reactions = reactions
            else:
                # superseded by a later request on this message; re-read it
                await self._restore_reactions(message_id, current.reactions)
            return reactions

    async def _restore_reactions(self, message_id: int, fallback: ReactionsByEmoji) -> None:
        key = _reactions_key(message_id)
        tag = self.state.requests.next(key)
        try:
            rows = await self.client.list_reactions(self.state.channel_id, message_id)
            reactions = reactions_from_rows_payload(rows)
        except ApiError as exc:
            logger.warning("Re-fetching reactions of message %s failed: %s", message_id, exc)
            reactions = fallback
        message = self.state.find(message_id)
        if message is not None and self.state.requests.is_current(key, tag):
            message.reactions = reactions


__all__ = [
    "Notifier",
    "OptimisticMutationEngine",
    "OPTIMISTIC_USER_NAME",
    "REACTION_FAILED_MESSAGE",
    "SEND_FAILED_MESSAGE",
]
