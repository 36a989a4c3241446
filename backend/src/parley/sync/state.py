"""Client-side view model of one channel."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Hashable, Mapping

from parley.reactions import ReactingUser, ReactionsByEmoji, reactions_from_payload

TEMP_ID_PREFIX = "temp-"

MessageId = int | str


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class MessageView:
    """A message as shown in a channel or thread.

    Server messages have integer ids; optimistic ones carry a ``temp-`` id
    until the server answers.
    """

    id: MessageId
    content: str
    channel_id: int
    user_id: str
    created_at: datetime
    updated_at: datetime | None = None
    parent_id: int | None = None
    user: ReactingUser | None = None
    reactions: ReactionsByEmoji = field(default_factory=dict)
    reply_count: int = 0

    @property
    def is_temporary(self) -> bool:
        return isinstance(self.id, str) and self.id.startswith(TEMP_ID_PREFIX)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MessageView":
        raw_user = payload.get("user")
        user = None
        if raw_user:
            user = ReactingUser(
                id=str(raw_user["id"]),
                name=str(raw_user.get("name") or ""),
                avatar_url=raw_user.get("avatar_url"),
            )
        updated = payload.get("updated_at")
        return cls(
            id=int(payload["id"]),
            content=str(payload["content"]),
            channel_id=int(payload["channel_id"]),
            user_id=str(payload["user_id"]),
            created_at=_parse_timestamp(payload["created_at"]),
            updated_at=_parse_timestamp(updated) if updated else None,
            parent_id=payload.get("parent_id"),
            user=user,
            reactions=reactions_from_payload(payload.get("reactions") or {}),
            reply_count=int(payload.get("reply_count") or 0),
        )


class RequestSequencer:
    """Monotonic request tags per resource.

    A response may only be applied while its tag is still the latest one
    issued for that resource; anything older is stale.
    """

    def __init__(self) -> None:
        self._latest: dict[Hashable, int] = defaultdict(int)

    def next(self, key: Hashable) -> int:
        self._latest[key] += 1
        return self._latest[key]

    def is_current(self, key: Hashable, tag: int) -> bool:
        return self._latest[key] == tag


@dataclass(slots=True)
class ChannelViewState:
    channel_id: int
    user_id: str
    messages: list[MessageView] = field(default_factory=list)
    threads: dict[int, list[MessageView]] = field(default_factory=dict)
    draft: str = ""
    has_more: bool = True
    requests: RequestSequencer = field(default_factory=RequestSequencer)

    def _lists(self) -> list[list[MessageView]]:
        return [self.messages, *self.threads.values()]

    def find(self, message_id: MessageId) -> MessageView | None:
        for messages in self._lists():
            for message in messages:
                if message.id == message_id:
                    return message
        return None

    def server_ids(self) -> list[int]:
        return [message.id for message in self.messages if not message.is_temporary]

    def oldest_loaded(self) -> MessageView | None:
        for message in self.messages:
            if not message.is_temporary:
                return message
        return None

    def oldest_created_at(self) -> datetime | None:
        oldest = self.oldest_loaded()
        return oldest.created_at if oldest is not None else None

    def open_thread(self, parent_id: int) -> list[MessageView]:
        return self.threads.setdefault(parent_id, [])

    def close_thread(self, parent_id: int) -> None:
        self.threads.pop(parent_id, None)

    def add_temporary(self, message: MessageView) -> None:
        if message.parent_id is None:
            self.messages.append(message)
        else:
            self.open_thread(message.parent_id).append(message)

    def discard(self, message_id: MessageId) -> bool:
        for messages in self._lists():
            for index, message in enumerate(messages):
                if message.id == message_id:
                    del messages[index]
                    return True
        return False

    def settle_temporary(self, temp_id: str, message: MessageView) -> None:
        """Swap an optimistic row for the server's copy of it.

        When a re-fetch already delivered the server row the temporary one is
        simply dropped.
        """

        target = self.messages if message.parent_id is None else self.open_thread(message.parent_id)
        if any(existing.id == message.id for existing in target):
            self.discard(temp_id)
            return
        for index, existing in enumerate(target):
            if existing.id == temp_id:
                target[index] = message
                return
        target.append(message)


__all__ = ["ChannelViewState", "MessageId", "MessageView", "RequestSequencer", "TEMP_ID_PREFIX"]
