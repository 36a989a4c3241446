"""Schemas related to user profiles and identity events."""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, constr

from app.models.enums import PresenceStatus, UserRole
from app.schemas.common import UtcDatetime


class PublicUser(BaseModel):
    """Minimal public-facing user information."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    avatar_url: str | None = Field(
        default=None, validation_alias=AliasChoices("avatar_url", "avatar_ref")
    )
    status: PresenceStatus = PresenceStatus.ONLINE


class UserRead(PublicUser):
    """Detailed representation of the current user."""

    email: str
    role: UserRole
    bio: str | None = None
    status_message: str | None = None
    status_emoji: str | None = None
    created_at: UtcDatetime
    updated_at: UtcDatetime


class UserProfileUpdate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None
    bio: constr(max_length=500) | None = None


class UserStatusUpdate(BaseModel):
    """Presence and custom status; the message length is checked against settings."""

    status: PresenceStatus | None = None
    status_message: str | None = None
    status_emoji: constr(strip_whitespace=True, max_length=32) | None = None


class IdentityWebhookEvent(BaseModel):
    """User lifecycle event pushed by the identity provider."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
