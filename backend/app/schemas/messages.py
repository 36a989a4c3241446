"""Schemas related to chat messages and reactions."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.common import UtcDatetime
from app.schemas.users import PublicUser


class ReactionUser(BaseModel):
    id: str
    name: str
    avatar_url: str | None = None


class ReactionGroupRead(BaseModel):
    """All reactions with one emoji on a message."""

    emoji: str
    count: int = Field(..., ge=0)
    users: list[ReactionUser] = Field(default_factory=list)


ReactionsByEmoji = dict[str, ReactionGroupRead]


class ReactionRead(BaseModel):
    """A single reaction row."""

    message_id: int
    user_id: str
    emoji: str
    created_at: UtcDatetime
    user: ReactionUser


class MessageRead(BaseModel):
    """Serialized message with its author, grouped reactions and reply count."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    channel_id: int
    user_id: str
    parent_id: int | None = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    user: PublicUser | None = None
    reactions: ReactionsByEmoji = Field(default_factory=dict)
    reply_count: int = 0


class MessageCreate(BaseModel):
    content: str
    parent_id: int | None = None


class MessageUpdate(BaseModel):
    content: str


class ReactionRequest(BaseModel):
    emoji: str
