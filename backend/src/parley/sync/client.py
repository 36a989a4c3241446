"""Async HTTP client for the chat API used by the sync core."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Literal

import httpx

from parley.cursors import MessageCursor

logger = logging.getLogger(__name__)

Direction = Literal["older", "newer"]


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    LIMIT_REACHED = "limit_reached"
    INVARIANT_VIOLATION = "invariant_violation"
    UPSTREAM_FAILURE = "upstream_failure"
    NETWORK = "network"


_CODE_KINDS = {
    "unauthenticated": ErrorKind.UNAUTHENTICATED,
    "forbidden": ErrorKind.FORBIDDEN,
    "not_found": ErrorKind.NOT_FOUND,
    "invalid_input": ErrorKind.INVALID_INPUT,
    "invalid_parent": ErrorKind.INVALID_INPUT,
    "limit_reached": ErrorKind.LIMIT_REACHED,
    "rate_limited": ErrorKind.LIMIT_REACHED,
    "invariant_violation": ErrorKind.INVARIANT_VIOLATION,
    "upstream_failure": ErrorKind.UPSTREAM_FAILURE,
}

_STATUS_KINDS = {
    400: ErrorKind.INVALID_INPUT,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    422: ErrorKind.INVALID_INPUT,
    429: ErrorKind.LIMIT_REACHED,
}


class ApiError(Exception):
    """Failed API call, classified into the server's error kinds."""

    def __init__(
        self,
        kind: ErrorKind,
        status: int | None,
        detail: str,
        *,
        code: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.kind = kind
        self.status = status
        self.detail = detail
        self.code = code
        self.retry_after = retry_after
        super().__init__(f"{kind.value}: {detail}")

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        code: str | None = None
        detail = response.reason_phrase or "Request failed"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("error")
            if body.get("detail"):
                detail = str(body["detail"])
        kind = _CODE_KINDS.get(code or "") or _STATUS_KINDS.get(response.status_code, ErrorKind.UPSTREAM_FAILURE)
        retry_after = None
        header = response.headers.get("Retry-After")
        if header and header.isdigit():
            retry_after = int(header)
        return cls(kind, response.status_code, detail, code=code, retry_after=retry_after)


def _format_cursor(cursor: MessageCursor | datetime | str | None) -> str | None:
    if cursor is None:
        return None
    if isinstance(cursor, MessageCursor):
        return cursor.encode()
    if isinstance(cursor, datetime):
        return cursor.isoformat()
    return cursor


class ChatApiClient:
    """Thin wrapper over the REST API returning decoded JSON payloads.

    Pass ``http_client`` to share a connection pool, or ``transport`` (for
    example ``httpx.ASGITransport``) to drive an in-process app; otherwise the
    client owns a plain ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
        api_prefix: str = "/api",
    ) -> None:
        self.token = token
        self.api_prefix = api_prefix.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        if params is not None:
            params = {key: value for key, value in params.items() if value is not None}
        try:
            response = await self._client.request(
                method,
                f"{self.api_prefix}{path}",
                params=params,
                json=json,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            logger.warning("Request %s %s failed: %s", method, path, exc)
            raise ApiError(ErrorKind.NETWORK, None, str(exc) or type(exc).__name__) from exc
        if response.is_error:
            raise ApiError.from_response(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def sync_user(self) -> dict[str, Any]:
        return await self._request("POST", "/users/sync")

    async def list_channels(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/channels")

    async def join_channel(self, channel_id: int) -> dict[str, Any]:
        return await self._request("POST", f"/channels/{channel_id}/join")

    async def list_messages(
        self,
        channel_id: int,
        *,
        cursor: MessageCursor | datetime | str | None = None,
        limit: int | None = None,
        direction: Direction = "older",
    ) -> list[dict[str, Any]]:
        return await self._request(
            "GET",
            f"/channels/{channel_id}/messages",
            params={"cursor": _format_cursor(cursor), "limit": limit, "direction": direction},
        )

    async def post_message(
        self, channel_id: int, content: str, *, parent_id: int | None = None
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            json={"content": content, "parent_id": parent_id},
        )

    async def update_message(self, channel_id: int, message_id: int, content: str) -> dict[str, Any]:
        return await self._request(
            "PATCH", f"/channels/{channel_id}/messages/{message_id}", json={"content": content}
        )

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}")

    async def list_replies(self, channel_id: int, message_id: int) -> list[dict[str, Any]]:
        return await self._request("GET", f"/channels/{channel_id}/messages/{message_id}/replies")

    async def toggle_reaction(self, channel_id: int, message_id: int, emoji: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"/channels/{channel_id}/messages/{message_id}/reactions", json={"emoji": emoji}
        )

    async def list_reactions(self, channel_id: int, message_id: int) -> list[dict[str, Any]]:
        return await self._request("GET", f"/channels/{channel_id}/messages/{message_id}/reactions")


__all__ = ["ApiError", "ChatApiClient", "ErrorKind"]
