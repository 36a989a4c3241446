"""Pydantic schemas for API payloads."""

from .channels import (
    ChannelCreate,
    ChannelRead,
    ChannelSummary,
    ChannelUpdate,
    MemberRoleUpdate,
    MembershipRead,
)
from .messages import (
    MessageCreate,
    MessageRead,
    MessageUpdate,
    ReactionGroupRead,
    ReactionRead,
    ReactionRequest,
    ReactionsByEmoji,
    ReactionUser,
)
from .users import (
    IdentityWebhookEvent,
    PublicUser,
    UserProfileUpdate,
    UserRead,
    UserStatusUpdate,
)

__all__ = [
    "ChannelCreate",
    "ChannelRead",
    "ChannelSummary",
    "ChannelUpdate",
    "MemberRoleUpdate",
    "MembershipRead",
    "MessageCreate",
    "MessageRead",
    "MessageUpdate",
    "ReactionGroupRead",
    "ReactionRead",
    "ReactionRequest",
    "ReactionsByEmoji",
    "ReactionUser",
    "IdentityWebhookEvent",
    "PublicUser",
    "UserProfileUpdate",
    "UserRead",
    "UserStatusUpdate",
]
