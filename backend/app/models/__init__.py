"""Database models package."""

from .base import Base
from .chat import Channel, ChannelMember, Message, MessageFile, MessageReaction, User, utcnow
from .enums import ChannelCapability, ChannelRole, PresenceStatus, UserRole

__all__ = [
    "Base",
    "User",
    "Channel",
    "ChannelMember",
    "Message",
    "MessageReaction",
    "MessageFile",
    "utcnow",
    "ChannelCapability",
    "ChannelRole",
    "PresenceStatus",
    "UserRole",
]
