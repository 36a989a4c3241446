"""Publishing committed row changes to the realtime change feed."""

from __future__ import annotations

from typing import Any

from app.models import Channel, ChannelMember, User
from parley.realtime import ChangeAction, ChangeEvent, get_change_feed


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def channel_record(channel: Channel) -> dict[str, Any]:
    return {
        "id": channel.id,
        "name": channel.name,
        "description": channel.description,
        "is_private": channel.is_private,
        "created_by": channel.created_by,
        "created_at": _iso(channel.created_at),
        "updated_at": _iso(channel.updated_at),
    }


def member_record(member: ChannelMember) -> dict[str, Any]:
    return {
        "id": member.id,
        "channel_id": member.channel_id,
        "user_id": member.user_id,
        "role_in_channel": member.role_in_channel.value,
        "joined_at": _iso(member.joined_at),
    }


def user_record(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "avatar_url": user.avatar_ref,
        "status": user.status.value,
        "status_message": user.status_message,
        "status_emoji": user.status_emoji,
        "updated_at": _iso(user.updated_at),
    }


async def publish_change(
    table: str,
    action: ChangeAction,
    *,
    record: dict[str, Any] | None = None,
    old_record: dict[str, Any] | None = None,
) -> None:
    """Announce a committed change; call only after the transaction commits."""

    await get_change_feed().publish(
        ChangeEvent(table=table, action=action, record=record, old_record=old_record)
    )
