"""Message store: listing, posting, editing, deleting and searching."""

from __future__ import annotations

from typing import Literal, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.core.errors import Forbidden, InvalidInput, InvalidParent, NotFound
from app.models import ChannelMember, Message
from app.schemas import MessageRead, PublicUser
from app.services.reactions import reactions_for_messages
from parley.cursors import MessageCursor, decode_cursor

settings = get_settings()

Direction = Literal["older", "newer"]


def parse_cursor(raw: str) -> MessageCursor:
    try:
        return decode_cursor(raw)
    except ValueError as exc:
        raise InvalidInput("Cursor must be an encoded cursor or an ISO-8601 timestamp") from exc


def _after(cursor: MessageCursor):
    if cursor.message_id is None:
        return Message.created_at > cursor.created_at
    return or_(
        Message.created_at > cursor.created_at,
        and_(Message.created_at == cursor.created_at, Message.id > cursor.message_id),
    )


def _before(cursor: MessageCursor):
    if cursor.message_id is None:
        return Message.created_at < cursor.created_at
    return or_(
        Message.created_at < cursor.created_at,
        and_(Message.created_at == cursor.created_at, Message.id < cursor.message_id),
    )


def _clamp_limit(limit: int | None) -> int:
    if limit is None:
        return settings.chat_history_default_limit
    return max(1, min(int(limit), settings.chat_history_max_limit))


def _normalize_content(content: str) -> str:
    normalized = (content or "").rstrip()
    if not normalized.strip():
        raise InvalidInput("Message content cannot be empty")
    if len(normalized) > settings.chat_message_max_length:
        raise InvalidInput(
            f"Message exceeds maximum length of {settings.chat_message_max_length} characters"
        )
    return normalized


def reply_counts(message_ids: Sequence[int], db: Session) -> dict[int, int]:
    if not message_ids:
        return {}
    stmt = (
        select(Message.parent_id, func.count(Message.id))
        .where(Message.parent_id.in_(list(message_ids)))
        .group_by(Message.parent_id)
    )
    return {parent_id: int(count) for parent_id, count in db.execute(stmt)}


def serialize_messages(messages: Sequence[Message], db: Session) -> list[MessageRead]:
    """Attach author, grouped reactions and reply count to each message."""

    ids = [message.id for message in messages]
    counts = reply_counts(ids, db)
    reactions = reactions_for_messages(ids, db)
    serialized = []
    for message in messages:
        grouped = reactions.get(message.id, {})
        serialized.append(
            MessageRead(
                id=message.id,
                content=message.content,
                channel_id=message.channel_id,
                user_id=message.user_id,
                parent_id=message.parent_id,
                created_at=message.created_at,
                updated_at=message.updated_at,
                user=PublicUser.model_validate(message.user) if message.user is not None else None,
                reactions={emoji: group.to_dict() for emoji, group in grouped.items()},
                reply_count=counts.get(message.id, 0),
            )
        )
    return serialized


def serialize_message(message: Message, db: Session) -> MessageRead:
    return serialize_messages([message], db)[0]


def get_message(message_id: int, db: Session, *, channel_id: int | None = None) -> Message:
    stmt = select(Message).where(Message.id == message_id).options(selectinload(Message.user))
    message = db.execute(stmt).scalar_one_or_none()
    if message is None or (channel_id is not None and message.channel_id != channel_id):
        raise NotFound("Message not found")
    return message


def list_messages(
    channel_id: int,
    db: Session,
    *,
    cursor: MessageCursor | None = None,
    limit: int | None = None,
    direction: Direction = "older",
) -> list[MessageRead]:
    """Top-level messages of a channel in ascending ``created_at`` order.

    ``older`` returns the newest ``limit`` rows strictly before ``cursor`` in
    ``(created_at, id)`` order (the latest page when no cursor is given).
    ``newer`` returns the oldest ``limit`` rows strictly after it.
    """

    size = _clamp_limit(limit)
    stmt = (
        select(Message)
        .where(Message.channel_id == channel_id, Message.parent_id.is_(None))
        .options(selectinload(Message.user))
    )
    if direction == "newer":
        if cursor is not None:
            stmt = stmt.where(_after(cursor))
        stmt = stmt.order_by(Message.created_at.asc(), Message.id.asc()).limit(size)
        rows = list(db.execute(stmt).scalars())
    elif direction == "older":
        if cursor is not None:
            stmt = stmt.where(_before(cursor))
        stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(size)
        rows = list(reversed(list(db.execute(stmt).scalars())))
    else:
        raise InvalidInput("direction must be 'older' or 'newer'")
    return serialize_messages(rows, db)


def list_replies(parent_id: int, db: Session) -> list[MessageRead]:
    stmt = (
        select(Message)
        .where(Message.parent_id == parent_id)
        .options(selectinload(Message.user))
        .order_by(Message.created_at.asc(), Message.id.asc())
    )
    return serialize_messages(list(db.execute(stmt).scalars()), db)


def post_message(
    channel_id: int,
    user_id: str,
    content: str,
    db: Session,
    *,
    parent_id: int | None = None,
) -> Message:
    normalized = _normalize_content(content)
    if parent_id is not None:
        parent = db.get(Message, parent_id)
        if parent is None or parent.channel_id != channel_id:
            raise InvalidParent()

    message = Message(channel_id=channel_id, user_id=user_id, content=normalized, parent_id=parent_id)
    db.add(message)
    db.commit()
    return get_message(message.id, db)


def update_message(message_id: int, user_id: str, content: str, db: Session) -> Message:
    message = get_message(message_id, db)
    if message.user_id != user_id:
        raise Forbidden("Only the author can edit this message")
    message.content = _normalize_content(content)
    db.commit()
    return get_message(message.id, db)


def delete_message(message_id: int, user_id: str, db: Session) -> dict:
    """Delete a message with its replies, reactions and files.

    Returns the row as it was, for change notifications.
    """

    message = get_message(message_id, db)
    if message.user_id != user_id:
        raise Forbidden("Only the author can delete this message")
    snapshot = message_record(message)
    db.delete(message)
    db.commit()
    return snapshot


def search_messages(user_id: str, query: str, db: Session, *, limit: int | None = None) -> list[MessageRead]:
    """Case-insensitive substring search over the caller's channels, newest first."""

    term = (query or "").strip()
    if not term:
        raise InvalidInput("Search query cannot be empty")
    size = max(1, min(limit or settings.chat_search_max_results, settings.chat_search_max_results))
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    member_channels = select(ChannelMember.channel_id).where(ChannelMember.user_id == user_id)
    stmt = (
        select(Message)
        .where(
            Message.channel_id.in_(member_channels),
            Message.content.ilike(f"%{escaped}%", escape="\\"),
        )
        .options(selectinload(Message.user))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(size)
    )
    return serialize_messages(list(db.execute(stmt).scalars()), db)


def message_record(message: Message) -> dict:
    return {
        "id": message.id,
        "content": message.content,
        "channel_id": message.channel_id,
        "user_id": message.user_id,
        "parent_id": message.parent_id,
        "created_at": message.created_at.isoformat() if message.created_at else None,
        "updated_at": message.updated_at.isoformat() if message.updated_at else None,
    }
