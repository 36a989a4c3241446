"""Channel membership and role checks shared by every write path."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.errors import Forbidden, InvariantViolation, NotFound
from app.models import Channel, ChannelCapability, ChannelMember, ChannelRole

ROLE_CAPABILITIES: dict[ChannelRole, frozenset[ChannelCapability]] = {
    ChannelRole.ADMIN: frozenset(ChannelCapability),
    ChannelRole.MEMBER: frozenset(
        {
            ChannelCapability.VIEW,
            ChannelCapability.POST_MESSAGES,
            ChannelCapability.REACT,
        }
    ),
}


def has_capability(role: ChannelRole, capability: ChannelCapability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def can_manage_channel(role: ChannelRole) -> bool:
    return has_capability(role, ChannelCapability.MANAGE_CHANNEL)


def can_remove_member(role: ChannelRole, is_self: bool) -> bool:
    """Members may always leave; removing someone else needs member management."""

    return is_self or has_capability(role, ChannelCapability.MANAGE_MEMBERS)


def channel_exists(channel_id: int, db: Session) -> Channel | None:
    return db.get(Channel, channel_id)


def get_membership(channel_id: int, user_id: str, db: Session) -> ChannelMember | None:
    stmt = select(ChannelMember).where(
        ChannelMember.channel_id == channel_id,
        ChannelMember.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def is_member(channel_id: int, user_id: str, db: Session) -> bool:
    return get_membership(channel_id, user_id, db) is not None


def is_admin(channel_id: int, user_id: str, db: Session) -> bool:
    membership = get_membership(channel_id, user_id, db)
    return membership is not None and membership.role_in_channel == ChannelRole.ADMIN


def require_channel(channel_id: int, db: Session) -> Channel:
    channel = channel_exists(channel_id, db)
    if channel is None:
        raise NotFound("Channel not found")
    return channel


def require_member(channel_id: int, user_id: str, db: Session) -> ChannelMember:
    """Return the caller's membership; a missing channel is reported before membership."""

    require_channel(channel_id, db)
    membership = get_membership(channel_id, user_id, db)
    if membership is None:
        raise Forbidden("Not a channel member")
    return membership


def require_capability(
    channel_id: int,
    user_id: str,
    capability: ChannelCapability,
    db: Session,
) -> ChannelMember:
    membership = require_member(channel_id, user_id, db)
    if not has_capability(membership.role_in_channel, capability):
        raise Forbidden("Insufficient permissions")
    return membership


def count_admins(channel_id: int, db: Session) -> int:
    stmt = select(func.count()).select_from(ChannelMember).where(
        ChannelMember.channel_id == channel_id,
        ChannelMember.role_in_channel == ChannelRole.ADMIN,
    )
    return int(db.execute(stmt).scalar_one())


def ensure_not_last_admin(target: ChannelMember, db: Session) -> None:
    """Reject demoting or removing the only remaining admin of a channel."""

    if target.role_in_channel != ChannelRole.ADMIN:
        return
    if count_admins(target.channel_id, db) <= 1:
        raise InvariantViolation("A channel must keep at least one admin")


def hand_over_admin_roles(user_id: str, db: Session) -> list[ChannelMember]:
    """Promote a successor wherever ``user_id`` is the only admin.

    The earliest-joined other member of each such channel becomes ADMIN.
    Channels with no other member are left alone. Returns the promoted
    memberships; the caller commits.
    """

    held = db.execute(
        select(ChannelMember).where(
            ChannelMember.user_id == user_id,
            ChannelMember.role_in_channel == ChannelRole.ADMIN,
        )
    ).scalars().all()
    promoted: list[ChannelMember] = []
    for membership in held:
        if count_admins(membership.channel_id, db) > 1:
            continue
        successor = db.execute(
            select(ChannelMember)
            .where(
                ChannelMember.channel_id == membership.channel_id,
                ChannelMember.user_id != user_id,
            )
            .order_by(ChannelMember.joined_at.asc(), ChannelMember.id.asc())
            .limit(1)
        ).scalar_one_or_none()
        if successor is None:
            continue
        successor.role_in_channel = ChannelRole.ADMIN
        promoted.append(successor)
    return promoted
