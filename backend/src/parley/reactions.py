"""Reaction grouping shared by the server and the client sync core.

Both sides compute ``ReactionsByEmoji`` with :func:`group_reactions` so an
optimistic map built on the client has exactly the shape the server returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping


@dataclass(frozen=True, slots=True)
class ReactingUser:
    """Public identity of a user attached to a reaction."""

    id: str
    name: str
    avatar_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "avatar_url": self.avatar_url}


@dataclass(frozen=True, slots=True)
class ReactionRow:
    """One ``(message, user, emoji)`` reaction with its user identity."""

    emoji: str
    user: ReactingUser


@dataclass(slots=True)
class ReactionGroup:
    emoji: str
    count: int = 0
    users: list[ReactingUser] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "emoji": self.emoji,
            "count": self.count,
            "users": [user.to_dict() for user in self.users],
        }


ReactionsByEmoji = dict[str, ReactionGroup]


def group_reactions(rows: Iterable[ReactionRow]) -> ReactionsByEmoji:
    """Bucket rows by emoji, keeping the order in which they are given.

    Callers pass rows ordered by creation time so the first reactor of each
    emoji stays first.
    """

    grouped: ReactionsByEmoji = {}
    for row in rows:
        bucket = grouped.get(row.emoji)
        if bucket is None:
            bucket = grouped[row.emoji] = ReactionGroup(emoji=row.emoji)
        bucket.users.append(row.user)
        bucket.count = len(bucket.users)
    return grouped


def flatten_reactions(reactions: Mapping[str, ReactionGroup]) -> list[ReactionRow]:
    return [ReactionRow(emoji=emoji, user=user) for emoji, group in reactions.items() for user in group.users]


def has_reacted(reactions: Mapping[str, ReactionGroup], emoji: str, user_id: str) -> bool:
    group = reactions.get(emoji)
    return group is not None and any(user.id == user_id for user in group.users)


def toggle_in_map(
    reactions: Mapping[str, ReactionGroup],
    emoji: str,
    user: ReactingUser,
) -> ReactionsByEmoji:
    """Return a regrouped copy of ``reactions`` with ``user``'s emoji flipped."""

    rows = flatten_reactions(reactions)
    if has_reacted(reactions, emoji, user.id):
        rows = [row for row in rows if not (row.emoji == emoji and row.user.id == user.id)]
    else:
        rows.append(ReactionRow(emoji=emoji, user=user))
    return group_reactions(rows)


def reactions_from_payload(payload: Mapping[str, Any]) -> ReactionsByEmoji:
    """Parse a ``ReactionsByEmoji`` JSON object."""

    reactions: ReactionsByEmoji = {}
    for emoji, raw in payload.items():
        users = [_user_from_payload(item) for item in raw.get("users", [])]
        reactions[emoji] = ReactionGroup(emoji=emoji, count=len(users), users=users)
    return reactions


def reactions_from_rows_payload(items: Iterable[Mapping[str, Any]]) -> ReactionsByEmoji:
    """Group a raw reaction list (``GET .../reactions``) into a map."""

    return group_reactions(
        ReactionRow(emoji=str(item["emoji"]), user=_user_from_payload(item["user"])) for item in items
    )


def _user_from_payload(raw: Mapping[str, Any]) -> ReactingUser:
    return ReactingUser(id=str(raw["id"]), name=str(raw.get("name") or ""), avatar_url=raw.get("avatar_url"))


__all__ = [
    "ReactingUser",
    "ReactionRow",
    "ReactionGroup",
    "ReactionsByEmoji",
    "group_reactions",
    "flatten_reactions",
    "has_reacted",
    "toggle_in_map",
    "reactions_from_payload",
    "reactions_from_rows_payload",
]
