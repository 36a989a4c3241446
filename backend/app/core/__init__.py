"""Core utilities for the Parley backend."""

from .errors import (
    ChatError,
    Forbidden,
    InvalidInput,
    InvalidParent,
    InvariantViolation,
    LimitReached,
    NotFound,
    RateLimited,
    Unauthenticated,
    UpstreamFailure,
)

__all__ = [
    "ChatError",
    "Forbidden",
    "InvalidInput",
    "InvalidParent",
    "InvariantViolation",
    "LimitReached",
    "NotFound",
    "RateLimited",
    "Unauthenticated",
    "UpstreamFailure",
]
