"""Client-side synchronization core for channel views."""

from .client import ApiError, ChatApiClient, ErrorKind
from .listener import ChannelChangeListener, ThreadChangeListener
from .optimistic import (
    OPTIMISTIC_USER_NAME,
    REACTION_FAILED_MESSAGE,
    SEND_FAILED_MESSAGE,
    OptimisticMutationEngine,
)
from .pagination import DEFAULT_PAGE_SIZE, PaginationCursorManager
from .reconcile import (
    MessagesSnapshot,
    ReactionsSnapshot,
    Reconciler,
    RepliesSnapshot,
    ReplaceReconciler,
    ScrollPreservingReconciler,
    Viewport,
)
from .source import ChangeSource, FeedChangeSource, SubscriptionRejected, WebSocketChangeSource
from .state import ChannelViewState, MessageView, RequestSequencer

__all__ = [
    "ApiError",
    "ChangeSource",
    "ChannelChangeListener",
    "ChannelViewState",
    "ChatApiClient",
    "DEFAULT_PAGE_SIZE",
    "ErrorKind",
    "FeedChangeSource",
    "MessageView",
    "MessagesSnapshot",
    "OPTIMISTIC_USER_NAME",
    "OptimisticMutationEngine",
    "PaginationCursorManager",
    "REACTION_FAILED_MESSAGE",
    "ReactionsSnapshot",
    "Reconciler",
    "RepliesSnapshot",
    "ReplaceReconciler",
    "RequestSequencer",
    "SEND_FAILED_MESSAGE",
    "ScrollPreservingReconciler",
    "SubscriptionRejected",
    "ThreadChangeListener",
    "Viewport",
    "WebSocketChangeSource",
]
