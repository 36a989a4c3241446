"""Change events and the subscription predicates that select them."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class ChangeAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


WATCHED_TABLES = frozenset({"messages", "message_reactions", "channels", "channel_members", "users"})


@dataclass(slots=True)
class ChangeEvent:
    """A committed row change on one of the watched tables.

    ``record`` is the row after the change and ``old_record`` the row before
    it; deletes carry only ``old_record``.
    """

    table: str
    action: ChangeAction
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None
    commit_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "action": self.action.value,
            "record": self.record,
            "old_record": self.old_record,
            "commit_timestamp": self.commit_timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        raw_timestamp = payload.get("commit_timestamp")
        timestamp = (
            datetime.fromisoformat(raw_timestamp)
            if isinstance(raw_timestamp, str)
            else datetime.now(timezone.utc)
        )
        return cls(
            table=str(payload["table"]),
            action=ChangeAction(payload["action"]),
            record=payload.get("record"),
            old_record=payload.get("old_record"),
            commit_timestamp=timestamp,
        )


class FilterSyntaxError(ValueError):
    """Raised when a subscription filter cannot be parsed."""


_FILTER_RE = re.compile(r"^(?P<column>[a-z_][a-z0-9_]*)=(?P<op>eq|in)\.(?P<value>.+)$")


@dataclass(frozen=True, slots=True)
class Predicate:
    """Row selector: ``column = value`` or ``column IN (values)`` on one table.

    A predicate without a column matches every change on its table.
    """

    table: str
    column: str | None = None
    op: str = "eq"
    values: tuple[str, ...] = ()

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.column is None:
            return True
        for row in (event.record, event.old_record):
            if row is None or self.column not in row:
                continue
            value = row[self.column]
            if value is not None and str(value) in self.values:
                return True
        return False

    def describe(self) -> str:
        if self.column is None:
            return self.table
        if self.op == "in":
            return f"{self.table}:{self.column}=in.({','.join(self.values)})"
        return f"{self.table}:{self.column}=eq.{self.values[0]}"


def parse_filter(table: str, expression: str | None) -> Predicate:
    """Parse ``channel_id=eq.5`` or ``message_id=in.(1,2,3)`` for ``table``."""

    if table not in WATCHED_TABLES:
        raise FilterSyntaxError(f"Unknown table '{table}'")
    if expression is None or not expression.strip():
        return Predicate(table=table)
    match = _FILTER_RE.match(expression.strip())
    if match is None:
        raise FilterSyntaxError(f"Malformed filter '{expression}'")
    column, op, raw = match.group("column", "op", "value")
    if op == "eq":
        values: tuple[str, ...] = (raw.strip(),)
    else:
        if not (raw.startswith("(") and raw.endswith(")")):
            raise FilterSyntaxError("'in' filters take a parenthesised list")
        values = tuple(item.strip() for item in raw[1:-1].split(",") if item.strip())
        if not values:
            raise FilterSyntaxError("'in' filter list is empty")
    if any(not value for value in values):
        raise FilterSyntaxError(f"Malformed filter '{expression}'")
    return Predicate(table=table, column=column, op=op, values=values)


def format_filter(column: str, values: list[Any] | tuple[Any, ...] | Any) -> str:
    """Build a filter string; sequences produce an ``in`` filter."""

    if isinstance(values, (list, tuple)):
        return f"{column}=in.({','.join(str(value) for value in values)})"
    return f"{column}=eq.{values}"
