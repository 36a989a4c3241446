"""Reaction toggling and grouping against the relational store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.core.errors import InvalidInput, LimitReached, NotFound
from app.models import Message, MessageReaction, User
from parley.reactions import ReactingUser, ReactionRow, ReactionsByEmoji, group_reactions

logger = logging.getLogger(__name__)

settings = get_settings()

MAX_EMOJI_LENGTH = 32


@dataclass(slots=True)
class ToggleResult:
    reactions: ReactionsByEmoji
    added: bool
    changed: bool
    row: dict


def validate_emoji(emoji: str) -> str:
    if not emoji or not emoji.strip():
        raise InvalidInput("Emoji is required")
    if any(ch.isspace() for ch in emoji):
        raise InvalidInput("Emoji must not contain whitespace")
    if len(emoji) > MAX_EMOJI_LENGTH:
        raise InvalidInput(f"Emoji must be at most {MAX_EMOJI_LENGTH} characters")
    return emoji


def reacting_user(user: User) -> ReactingUser:
    return ReactingUser(id=user.id, name=user.name, avatar_url=user.avatar_ref)


def list_reactions(message_ids: Iterable[int], db: Session) -> list[MessageReaction]:
    """Reaction rows for the given messages in grouping order."""

    ids = list(message_ids)
    if not ids:
        return []
    stmt = (
        select(MessageReaction)
        .where(MessageReaction.message_id.in_(ids))
        .options(selectinload(MessageReaction.user))
        .order_by(MessageReaction.created_at, MessageReaction.user_id, MessageReaction.emoji)
    )
    return list(db.execute(stmt).scalars())


def _group(rows: Iterable[MessageReaction]) -> ReactionsByEmoji:
    return group_reactions(ReactionRow(emoji=row.emoji, user=reacting_user(row.user)) for row in rows)


def reactions_by_emoji(message_id: int, db: Session) -> ReactionsByEmoji:
    return _group(list_reactions([message_id], db))


def reactions_for_messages(message_ids: Iterable[int], db: Session) -> dict[int, ReactionsByEmoji]:
    by_message: dict[int, list[MessageReaction]] = {}
    for row in list_reactions(message_ids, db):
        by_message.setdefault(row.message_id, []).append(row)
    return {message_id: _group(rows) for message_id, rows in by_message.items()}


def reaction_snapshot(row: MessageReaction) -> dict:
    return {
        "message_id": row.message_id,
        "user_id": row.user_id,
        "emoji": row.emoji,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def toggle_reaction(
    message_id: int,
    user_id: str,
    emoji: str,
    db: Session,
    *,
    limit: int | None = None,
) -> ToggleResult:
    """Flip ``user_id``'s ``emoji`` reaction on a message.

    An existing reaction is removed. A new one is refused with
    ``LimitReached`` once the user already holds ``limit`` reactions on the
    message. The returned map is always regrouped from a fresh read.
    """

    emoji = validate_emoji(emoji)
    cap = settings.reaction_limit_per_user if limit is None else limit
    if db.get(Message, message_id) is None:
        raise NotFound("Message not found")

    existing = db.get(MessageReaction, (message_id, user_id, emoji))
    if existing is not None:
        snapshot = reaction_snapshot(existing)
        db.delete(existing)
        db.commit()
        return ToggleResult(reactions_by_emoji(message_id, db), added=False, changed=True, row=snapshot)

    held = db.execute(
        select(func.count())
        .select_from(MessageReaction)
        .where(MessageReaction.message_id == message_id, MessageReaction.user_id == user_id)
    ).scalar_one()
    if held >= cap:
        raise LimitReached(f"Maximum of {cap} reactions per message reached")

    reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
    db.add(reaction)
    try:
        db.commit()
    except IntegrityError:
        # Another request inserted the same row first; it is already on.
        db.rollback()
        logger.debug("Concurrent duplicate reaction", extra={"message_id": message_id, "emoji": emoji})
        return ToggleResult(reactions_by_emoji(message_id, db), added=True, changed=False, row={})
    snapshot = reaction_snapshot(reaction)
    return ToggleResult(reactions_by_emoji(message_id, db), added=True, changed=True, row=snapshot)
