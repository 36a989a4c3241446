"""History cursors shared by the server and the client sync core.

A cursor pins a position in the ``(created_at, id)`` order of a channel's
messages. Plain ISO-8601 timestamps are still accepted and bound on
``created_at`` alone.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone

CURSOR_VERSION = "v1"


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""

    value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class MessageCursor:
    created_at: datetime
    message_id: int | None = None

    def encode(self) -> str:
        if self.message_id is None:
            return self.created_at.isoformat()
        payload = f"{CURSOR_VERSION}|{self.created_at.isoformat()}|{self.message_id}"
        return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def encode_cursor(created_at: datetime, message_id: int) -> str:
    return MessageCursor(created_at, message_id).encode()


def decode_cursor(raw: str) -> MessageCursor:
    """Decode an encoded cursor or a bare timestamp; raises ``ValueError``."""

    text = raw.strip()
    try:
        decoded = base64.urlsafe_b64decode(text.encode("ascii")).decode("utf-8")
    except ValueError:
        decoded = ""
    if decoded.startswith(f"{CURSOR_VERSION}|"):
        _, timestamp, message_id = decoded.split("|", 2)
        return MessageCursor(parse_timestamp(timestamp), int(message_id))
    return MessageCursor(parse_timestamp(text))


__all__ = ["CURSOR_VERSION", "MessageCursor", "decode_cursor", "encode_cursor", "parse_timestamp"]
