from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Workspace-wide role of a user."""

    ADMIN = "ADMIN"
    USER = "USER"


class ChannelRole(str, Enum):
    """Role a member holds inside a single channel."""

    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class PresenceStatus(str, Enum):
    """User-configurable presence indicator."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    AWAY = "AWAY"


class ChannelCapability(str, Enum):
    """Actions a channel role may be allowed to perform."""

    VIEW = "view"
    POST_MESSAGES = "post_messages"
    REACT = "react"
    MANAGE_CHANNEL = "manage_channel"
    MANAGE_MEMBERS = "manage_members"
    DELETE_CHANNEL = "delete_channel"
