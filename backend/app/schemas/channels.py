"""Schemas for channels and channel membership."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, constr

from app.models import ChannelRole
from app.schemas.common import UtcDatetime
from app.schemas.users import PublicUser


class ChannelCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=50)
    description: constr(strip_whitespace=True, max_length=200) | None = None
    is_private: bool = False


class ChannelUpdate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=50) | None = None
    description: constr(strip_whitespace=True, max_length=200) | None = None
    is_private: bool | None = None


class ChannelRead(BaseModel):
    """Serialized channel."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    is_private: bool
    created_by: str | None = None
    created_at: UtcDatetime
    updated_at: UtcDatetime


class ChannelSummary(ChannelRead):
    """Channel as listed in the sidebar, with the caller's standing in it."""

    is_member: bool = False
    role_in_channel: ChannelRole | None = None
    member_count: int = 0
    message_count: int = 0


class MembershipRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    channel_id: int
    user_id: str
    role_in_channel: ChannelRole
    joined_at: UtcDatetime
    user: PublicUser | None = None


class MemberRoleUpdate(BaseModel):
    role: ChannelRole
