"""Domain error hierarchy shared by services and route handlers."""

from __future__ import annotations

from typing import Any

from fastapi import status


class ChatError(Exception):
    """Base class for errors surfaced to API clients."""

    code = "upstream_failure"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def headers(self) -> dict[str, str] | None:
        return None

    def to_response(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.detail}


class Unauthenticated(ChatError):
    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Could not validate credentials"

    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class Forbidden(ChatError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Insufficient permissions"


class NotFound(ChatError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class InvalidInput(ChatError):
    code = "invalid_input"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input"


class InvalidParent(InvalidInput):
    """Reply target is missing or lives in another channel."""

    code = "invalid_parent"
    default_detail = "Parent message not found in this channel"


class LimitReached(ChatError):
    code = "limit_reached"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Limit reached"


class RateLimited(LimitReached):
    code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = "Too many requests"

    def __init__(self, retry_after: int, detail: str | None = None) -> None:
        self.retry_after = max(int(retry_after), 1)
        super().__init__(detail)

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after)}

    def to_response(self) -> dict[str, Any]:
        payload = super().to_response()
        payload["retry_after"] = self.retry_after
        return payload


class InvariantViolation(ChatError):
    code = "invariant_violation"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Operation would break a workspace invariant"


class UpstreamFailure(ChatError):
    """Store or provider failure; detail is never taken from the cause."""


__all__ = [
    "ChatError",
    "Unauthenticated",
    "Forbidden",
    "NotFound",
    "InvalidInput",
    "InvalidParent",
    "LimitReached",
    "RateLimited",
    "InvariantViolation",
    "UpstreamFailure",
]
