"""User provisioning from the identity provider and default channel membership."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.errors import InvalidInput
from app.core.security import Identity
from app.models import Channel, ChannelMember, ChannelRole, PresenceStatus, User, UserRole

logger = logging.getLogger(__name__)

settings = get_settings()


def get_default_channel(db: Session) -> Channel | None:
    stmt = select(Channel).where(Channel.name == settings.default_channel_name)
    return db.execute(stmt).scalar_one_or_none()


def join_default_channel(user: User, db: Session) -> ChannelMember | None:
    """Add ``user`` to the default channel, creating it on first use.

    The user who causes the channel to be created becomes its admin. Returns
    the new membership, or ``None`` when the user already belonged to it.
    """

    channel = get_default_channel(db)
    if channel is None:
        channel = Channel(
            name=settings.default_channel_name,
            description="Company-wide announcements and chatter",
            is_private=False,
            created_by=user.id,
        )
        db.add(channel)
        db.flush()
        role = ChannelRole.ADMIN
        logger.info("Created default channel", extra={"channel": channel.name, "user_id": user.id})
    else:
        existing = db.execute(
            select(ChannelMember).where(
                ChannelMember.channel_id == channel.id,
                ChannelMember.user_id == user.id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return None
        role = ChannelRole.MEMBER
    membership = ChannelMember(channel_id=channel.id, user_id=user.id, role_in_channel=role)
    db.add(membership)
    db.flush()
    return membership


def _display_name(name: str | None, email: str) -> str:
    cleaned = (name or "").strip()
    return cleaned or email.split("@", 1)[0] or "Anonymous User"


def upsert_user(
    db: Session,
    *,
    user_id: str,
    email: str | None,
    name: str | None = None,
    avatar_ref: str | None = None,
    role: UserRole | None = None,
    status: PresenceStatus | None = None,
) -> tuple[User, bool]:
    """Create or refresh a user row from identity data; returns ``(user, created)``."""

    if not email:
        raise InvalidInput("Identity has no email address")
    user = db.get(User, user_id)
    created = user is None
    if user is None:
        user = User(
            id=user_id,
            email=email,
            name=_display_name(name, email),
            avatar_ref=avatar_ref,
            role=role or UserRole.USER,
            status=status or PresenceStatus.OFFLINE,
        )
        db.add(user)
    else:
        user.email = email
        if name:
            user.name = _display_name(name, email)
        if avatar_ref:
            user.avatar_ref = avatar_ref
        if role is not None:
            user.role = role
        if status is not None:
            user.status = status
    db.flush()
    return user, created


def sync_user(identity: Identity, db: Session) -> tuple[User, ChannelMember | None]:
    """Upsert the signed-in user and make sure they belong to the default channel."""

    user, created = upsert_user(
        db,
        user_id=identity.user_id,
        email=identity.email,
        name=identity.name,
        avatar_ref=identity.avatar_ref,
        status=PresenceStatus.ONLINE,
    )
    membership = join_default_channel(user, db)
    db.commit()
    if created:
        logger.info("Provisioned user on first sign-in", extra={"user_id": user.id})
    return user, membership
