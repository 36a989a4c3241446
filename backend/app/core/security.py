"""Identity token and webhook signature helpers."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from app.config import get_settings
from app.core.errors import Unauthenticated

settings = get_settings()


@dataclass(slots=True)
class Identity:
    """Claims extracted from a validated identity token."""

    user_id: str
    email: str | None = None
    name: str | None = None
    avatar_ref: str | None = None


def create_identity_token(
    subject: str,
    *,
    email: str | None = None,
    name: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed identity token, as the identity provider would."""

    to_encode: Dict[str, Any] = {"sub": subject}
    if email is not None:
        to_encode["email"] = email
    if name is not None:
        to_encode["name"] = name
    if settings.identity_issuer:
        to_encode["iss"] = settings.identity_issuer
    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.identity_token_expire_minutes)
    )
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.identity_jwt_secret, algorithm=settings.identity_jwt_algorithm)


def decode_identity_token(token: str) -> Dict[str, Any]:
    """Decode and validate an identity token."""

    options: Dict[str, Any] = {"require": ["sub", "exp"]}
    try:
        payload = jwt.decode(
            token,
            settings.identity_jwt_secret,
            algorithms=[settings.identity_jwt_algorithm],
            issuer=settings.identity_issuer or None,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthenticated() from exc
    return payload


def resolve_identity(token: str | None) -> Identity:
    """Return the identity behind a bearer token or raise ``Unauthenticated``."""

    if not token:
        raise Unauthenticated("Not authenticated")
    payload = decode_identity_token(token)
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise Unauthenticated()
    return Identity(
        user_id=subject,
        email=payload.get("email"),
        name=payload.get("name"),
        avatar_ref=payload.get("picture"),
    )


def sign_webhook_payload(body: bytes, secret: str | None = None) -> str:
    key = (secret or settings.identity_webhook_secret).encode("utf-8")
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None) -> bool:
    """Check an identity webhook body against its ``sha256=<hex>`` signature."""

    if not signature:
        return False
    provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
    expected = sign_webhook_payload(body)
    return hmac.compare_digest(expected, provided.strip().lower())
