"""Channel and channel membership endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.api.deps import get_current_user
from app.config import get_settings
from app.core.errors import Forbidden, InvalidInput, InvariantViolation, LimitReached, NotFound
from app.database import get_db
from app.models import (
    Channel,
    ChannelCapability,
    ChannelMember,
    ChannelRole,
    Message,
    User,
    UserRole,
)
from app.schemas import (
    ChannelCreate,
    ChannelRead,
    ChannelSummary,
    ChannelUpdate,
    MemberRoleUpdate,
    MembershipRead,
)
from app.services.access import (
    can_remove_member,
    ensure_not_last_admin,
    get_membership,
    require_capability,
    require_channel,
    require_member,
)
from app.services.change_events import channel_record, member_record, publish_change
from parley.realtime import ChangeAction

router = APIRouter(prefix="/channels", tags=["channels"])

logger = logging.getLogger(__name__)

settings = get_settings()


def _ensure_name_available(name: str, db: Session, *, exclude_id: int | None = None) -> None:
    stmt = select(Channel.id).where(func.lower(Channel.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Channel.id != exclude_id)
    if db.execute(stmt).first() is not None:
        raise InvalidInput("Channel name already taken")


def _membership_read(member: ChannelMember) -> MembershipRead:
    return MembershipRead.model_validate(member)


@router.get("", response_model=list[ChannelSummary])
def list_channels(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ChannelSummary]:
    """Channels the caller belongs to plus every public channel."""

    own_roles = dict(
        db.execute(
            select(ChannelMember.channel_id, ChannelMember.role_in_channel).where(
                ChannelMember.user_id == current_user.id
            )
        ).all()
    )
    channels = db.execute(
        select(Channel)
        .where(or_(Channel.is_private.is_(False), Channel.id.in_(list(own_roles) or [-1])))
        .order_by(Channel.created_at.desc(), Channel.id.desc())
    ).scalars().all()
    ids = [channel.id for channel in channels]
    member_counts = dict(
        db.execute(
            select(ChannelMember.channel_id, func.count())
            .where(ChannelMember.channel_id.in_(ids))
            .group_by(ChannelMember.channel_id)
        ).all()
    )
    message_counts = dict(
        db.execute(
            select(Message.channel_id, func.count())
            .where(Message.channel_id.in_(ids))
            .group_by(Message.channel_id)
        ).all()
    )
    summaries = []
    for channel in channels:
        summary = ChannelSummary.model_validate(channel)
        summary.is_member = channel.id in own_roles
        summary.role_in_channel = own_roles.get(channel.id)
        summary.member_count = member_counts.get(channel.id, 0)
        summary.message_count = message_counts.get(channel.id, 0)
        summaries.append(summary)
    return summaries


@router.post("", response_model=ChannelRead, status_code=status.HTTP_201_CREATED)
async def create_channel(
    payload: ChannelCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Channel:
    """Create a channel; the creator becomes its admin."""

    if current_user.role != UserRole.ADMIN:
        raise Forbidden("Admin access required")
    total = db.execute(select(func.count()).select_from(Channel)).scalar_one()
    if total >= settings.channel_limit:
        raise LimitReached(f"Workspace already has the maximum of {settings.channel_limit} channels")
    _ensure_name_available(payload.name, db)

    channel = Channel(
        name=payload.name,
        description=payload.description,
        is_private=payload.is_private,
        created_by=current_user.id,
    )
    db.add(channel)
    db.flush()
    membership = ChannelMember(
        channel_id=channel.id,
        user_id=current_user.id,
        role_in_channel=ChannelRole.ADMIN,
    )
    db.add(membership)
    db.commit()
    db.refresh(channel)
    logger.info("Channel created", extra={"channel_id": channel.id, "user_id": current_user.id})

    await publish_change("channels", ChangeAction.INSERT, record=channel_record(channel))
    await publish_change("channel_members", ChangeAction.INSERT, record=member_record(membership))
    return channel


@router.get("/{channel_id}", response_model=ChannelRead)
def read_channel(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Channel:
    channel = require_channel(channel_id, db)
    if channel.is_private:
        require_member(channel_id, current_user.id, db)
    return channel


@router.patch("/{channel_id}", response_model=ChannelRead)
async def update_channel(
    channel_id: int,
    payload: ChannelUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Channel:
    """Update mutable channel attributes; channel admins only."""

    require_capability(channel_id, current_user.id, ChannelCapability.MANAGE_CHANNEL, db)
    channel = require_channel(channel_id, db)
    old = channel_record(channel)

    update_data = payload.model_dump(exclude_unset=True)
    if "name" in update_data and update_data["name"] is not None:
        new_name = update_data["name"]
        if channel.name == settings.default_channel_name and new_name != channel.name:
            raise InvariantViolation(f"The '{settings.default_channel_name}' channel cannot be renamed")
        _ensure_name_available(new_name, db, exclude_id=channel.id)
        channel.name = new_name
    if "description" in update_data:
        channel.description = update_data["description"]
    if "is_private" in update_data and update_data["is_private"] is not None:
        channel.is_private = update_data["is_private"]

    db.commit()
    db.refresh(channel)
    await publish_change("channels", ChangeAction.UPDATE, record=channel_record(channel), old_record=old)
    return channel


@router.delete("/{channel_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_channel(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    """Delete a channel with its memberships and messages."""

    require_capability(channel_id, current_user.id, ChannelCapability.DELETE_CHANNEL, db)
    channel = require_channel(channel_id, db)
    if channel.name == settings.default_channel_name:
        raise InvariantViolation(f"The '{settings.default_channel_name}' channel cannot be deleted")
    old = channel_record(channel)
    db.delete(channel)
    db.commit()
    logger.info("Channel deleted", extra={"channel_id": channel_id, "user_id": current_user.id})

    await publish_change("channels", ChangeAction.DELETE, old_record=old)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{channel_id}/join", response_model=MembershipRead)
async def join_channel(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MembershipRead:
    channel = require_channel(channel_id, db)
    if channel.is_private:
        raise InvalidInput("Cannot join a private channel")
    if get_membership(channel_id, current_user.id, db) is not None:
        raise InvalidInput("Already a member of this channel")

    membership = ChannelMember(
        channel_id=channel.id,
        user_id=current_user.id,
        role_in_channel=ChannelRole.MEMBER,
    )
    db.add(membership)
    db.commit()
    db.refresh(membership)

    await publish_change("channel_members", ChangeAction.INSERT, record=member_record(membership))
    return _membership_read(membership)


@router.get("/{channel_id}/members", response_model=list[MembershipRead])
def list_members(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MembershipRead]:
    require_member(channel_id, current_user.id, db)
    members = db.execute(
        select(ChannelMember)
        .where(ChannelMember.channel_id == channel_id)
        .options(selectinload(ChannelMember.user))
        .order_by(ChannelMember.joined_at, ChannelMember.id)
    ).scalars().all()
    return [_membership_read(member) for member in members]


@router.patch("/{channel_id}/members/{user_id}", response_model=MembershipRead)
async def update_member_role(
    channel_id: int,
    user_id: str,
    payload: MemberRoleUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MembershipRead:
    """Promote or demote a member; the last admin cannot be demoted."""

    require_capability(channel_id, current_user.id, ChannelCapability.MANAGE_MEMBERS, db)
    target = get_membership(channel_id, user_id, db)
    if target is None:
        raise NotFound("Member not found")
    if target.role_in_channel == payload.role:
        return _membership_read(target)
    if payload.role != ChannelRole.ADMIN:
        ensure_not_last_admin(target, db)

    old = member_record(target)
    target.role_in_channel = payload.role
    db.commit()
    db.refresh(target)

    await publish_change(
        "channel_members", ChangeAction.UPDATE, record=member_record(target), old_record=old
    )
    return _membership_read(target)


@router.delete("/{channel_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    channel_id: int,
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    """Remove a member (or leave); the last admin cannot be removed."""

    actor = require_member(channel_id, current_user.id, db)
    if not can_remove_member(actor.role_in_channel, is_self=user_id == current_user.id):
        raise Forbidden("Insufficient permissions")
    target = get_membership(channel_id, user_id, db)
    if target is None:
        raise NotFound("Member not found")
    ensure_not_last_admin(target, db)

    old = member_record(target)
    db.delete(target)
    db.commit()

    await publish_change("channel_members", ChangeAction.DELETE, old_record=old)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
