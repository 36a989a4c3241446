"""HTTP endpoints for channel messages, threads and reactions."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import enforce_rate_limit, get_current_user
from app.config import get_settings
from app.database import get_db
from app.models import ChannelCapability, User
from app.schemas import (
    MessageCreate,
    MessageRead,
    MessageUpdate,
    ReactionGroupRead,
    ReactionRead,
    ReactionRequest,
)
from app.services import messages as message_store
from app.services.access import require_capability, require_member
from app.services.change_events import publish_change
from app.services.reactions import list_reactions, reacting_user, toggle_reaction
from parley.realtime import ChangeAction

settings = get_settings()

router = APIRouter(prefix="/channels/{channel_id}/messages", tags=["messages"])
search_router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("", response_model=list[MessageRead])
def list_channel_messages(
    channel_id: int,
    cursor: str | None = Query(default=None, description="Encoded (created_at, id) cursor or ISO-8601 timestamp, exclusive"),
    limit: int = Query(default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit),
    direction: Literal["older", "newer"] = Query(default="older"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    """Return one page of top-level messages in ascending order."""

    require_member(channel_id, current_user.id, db)
    boundary = message_store.parse_cursor(cursor) if cursor else None
    return message_store.list_messages(channel_id, db, cursor=boundary, limit=limit, direction=direction)


@router.post("", response_model=MessageRead, dependencies=[Depends(enforce_rate_limit)])
async def create_message(
    channel_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Post a message or a threaded reply."""

    require_capability(channel_id, current_user.id, ChannelCapability.POST_MESSAGES, db)
    message = message_store.post_message(
        channel_id, current_user.id, payload.content, db, parent_id=payload.parent_id
    )
    serialized = message_store.serialize_message(message, db)
    await publish_change("messages", ChangeAction.INSERT, record=message_store.message_record(message))
    return serialized


@router.patch("/{message_id}", response_model=MessageRead)
async def update_message(
    channel_id: int,
    message_id: int,
    payload: MessageUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Edit message content; authors only."""

    require_member(channel_id, current_user.id, db)
    old = message_store.message_record(message_store.get_message(message_id, db, channel_id=channel_id))
    message = message_store.update_message(message_id, current_user.id, payload.content, db)
    serialized = message_store.serialize_message(message, db)
    await publish_change(
        "messages", ChangeAction.UPDATE, record=message_store.message_record(message), old_record=old
    )
    return serialized


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    channel_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    """Delete a message with its replies and reactions; authors only."""

    require_member(channel_id, current_user.id, db)
    message_store.get_message(message_id, db, channel_id=channel_id)
    old = message_store.delete_message(message_id, current_user.id, db)
    await publish_change("messages", ChangeAction.DELETE, old_record=old)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{message_id}/replies", response_model=list[MessageRead])
def list_message_replies(
    channel_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    require_member(channel_id, current_user.id, db)
    message_store.get_message(message_id, db, channel_id=channel_id)
    return message_store.list_replies(message_id, db)


@router.get("/{message_id}/reactions", response_model=list[ReactionRead])
def list_message_reactions(
    channel_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ReactionRead]:
    """Every reaction on the message, oldest first."""

    require_member(channel_id, current_user.id, db)
    message_store.get_message(message_id, db, channel_id=channel_id)
    return [
        ReactionRead(
            message_id=row.message_id,
            user_id=row.user_id,
            emoji=row.emoji,
            created_at=row.created_at,
            user=reacting_user(row.user).to_dict(),
        )
        for row in list_reactions([message_id], db)
    ]


@router.post(
    "/{message_id}/reactions",
    response_model=dict[str, ReactionGroupRead],
    dependencies=[Depends(enforce_rate_limit)],
)
async def toggle_message_reaction(
    channel_id: int,
    message_id: int,
    payload: ReactionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict[str, ReactionGroupRead]:
    """Toggle the caller's reaction and return the regrouped reaction map."""

    require_capability(channel_id, current_user.id, ChannelCapability.REACT, db)
    message_store.get_message(message_id, db, channel_id=channel_id)
    result = toggle_reaction(message_id, current_user.id, payload.emoji, db)
    if result.changed:
        if result.added:
            await publish_change("message_reactions", ChangeAction.INSERT, record=result.row)
        else:
            await publish_change("message_reactions", ChangeAction.DELETE, old_record=result.row)
    return {emoji: ReactionGroupRead(**group.to_dict()) for emoji, group in result.reactions.items()}


@search_router.get("/search", response_model=list[MessageRead])
def search_messages(
    q: str = Query(..., description="Case-insensitive text to look for"),
    limit: int = Query(default=settings.chat_search_max_results, ge=1, le=settings.chat_search_max_results),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    return message_store.search_messages(current_user.id, q, db, limit=limit)
