"""Applying authoritative snapshots to a channel view."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Protocol

from parley.reactions import ReactionsByEmoji

from .state import ChannelViewState, MessageView


@dataclass(frozen=True, slots=True)
class MessagesSnapshot:
    """Loaded window of top-level channel messages, oldest first."""

    messages: list[MessageView]


@dataclass(frozen=True, slots=True)
class RepliesSnapshot:
    parent_id: int
    replies: list[MessageView]


@dataclass(frozen=True, slots=True)
class ReactionsSnapshot:
    message_id: int
    reactions: ReactionsByEmoji


Snapshot = MessagesSnapshot | RepliesSnapshot | ReactionsSnapshot


class Reconciler(Protocol):
    def reconcile(self, snapshot: Snapshot) -> None: ...


class ReplaceReconciler:
    """Replace local state wholesale with each snapshot.

    Optimistic rows still waiting for the server survive a replace unless the
    snapshot already holds a message by the same author with the same content
    created within ``match_window`` of the optimistic one.
    """

    def __init__(self, state: ChannelViewState, *, match_window: timedelta = timedelta(seconds=30)) -> None:
        self.state = state
        self.match_window = match_window

    def reconcile(self, snapshot: Snapshot) -> None:
        if isinstance(snapshot, MessagesSnapshot):
            self.state.messages = self._merge(self.state.messages, snapshot.messages)
        elif isinstance(snapshot, RepliesSnapshot):
            if snapshot.parent_id in self.state.threads:
                current = self.state.threads[snapshot.parent_id]
                self.state.threads[snapshot.parent_id] = self._merge(current, snapshot.replies)
        elif isinstance(snapshot, ReactionsSnapshot):
            message = self.state.find(snapshot.message_id)
            if message is not None:
                message.reactions = snapshot.reactions

    def _merge(self, current: list[MessageView], incoming: list[MessageView]) -> list[MessageView]:
        pending = [
            message
            for message in current
            if message.is_temporary and not any(self._same_message(message, other) for other in incoming)
        ]
        return list(incoming) + pending

    def _same_message(self, temporary: MessageView, server: MessageView) -> bool:
        return (
            server.user_id == temporary.user_id
            and server.content == temporary.content
            and abs(server.created_at - temporary.created_at) <= self.match_window
        )


class Viewport(Protocol):
    """Scroll position of whatever widget renders the message list."""

    scroll_top: float

    @property
    def scroll_height(self) -> float: ...

    @property
    def client_height(self) -> float: ...


class ScrollPreservingReconciler:
    """Keep the reader's place while message snapshots are applied.

    Readers scrolled up stay on the same messages when rows arrive above or
    below them. Readers at the bottom follow their own new messages; messages
    from others only pull the view down when ``follow_others_at_bottom`` is
    set.
    """

    def __init__(
        self,
        inner: Reconciler,
        viewport: Viewport,
        *,
        current_user_id: str,
        measure: Callable[[], float] | None = None,
        threshold: float = 100,
        follow_others_at_bottom: bool = False,
    ) -> None:
        self.inner = inner
        self.viewport = viewport
        self.current_user_id = current_user_id
        self.measure = measure or (lambda: viewport.scroll_height)
        self.threshold = threshold
        self.follow_others_at_bottom = follow_others_at_bottom

    def is_near_bottom(self) -> bool:
        distance = self.measure() - (self.viewport.scroll_top + self.viewport.client_height)
        return distance <= self.threshold

    def reconcile(self, snapshot: Snapshot) -> None:
        if not isinstance(snapshot, MessagesSnapshot):
            self.inner.reconcile(snapshot)
            return

        height_before = self.measure()
        top_before = self.viewport.scroll_top
        near_bottom = self.is_near_bottom()

        self.inner.reconcile(snapshot)

        height_after = self.measure()
        if not near_bottom:
            self.viewport.scroll_top = top_before + (height_after - height_before)
            return
        newest = snapshot.messages[-1] if snapshot.messages else None
        if newest is None:
            return
        if newest.user_id == self.current_user_id or self.follow_others_at_bottom:
            self.viewport.scroll_top = max(height_after - self.viewport.client_height, 0)


__all__ = [
    "MessagesSnapshot",
    "ReactionsSnapshot",
    "Reconciler",
    "RepliesSnapshot",
    "ReplaceReconciler",
    "ScrollPreservingReconciler",
    "Snapshot",
    "Viewport",
]
