"""FastAPI dependencies for the API layer."""

from __future__ import annotations

import logging

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.errors import Unauthenticated
from app.core.security import Identity, resolve_identity
from app.database import get_db
from app.models import User
from app.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    """Validated identity behind the bearer token."""

    token = credentials.credentials if credentials is not None else None
    return resolve_identity(token)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str | None:
    """Return the caller's user id, or ``None`` for a missing or invalid session."""

    if credentials is None:
        return None
    try:
        return resolve_identity(credentials.credentials).user_id
    except Unauthenticated as exc:
        logger.debug("Rejected identity token: %s", exc.detail)
        return None


def require_user_id(user_id: str | None = Depends(get_current_user_id)) -> str:
    if user_id is None:
        raise Unauthenticated("Not authenticated")
    return user_id


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a provisioned user from an identity token or raise ``Unauthenticated``."""

    identity = resolve_identity(token)
    user = db.get(User, identity.user_id)
    if user is None:
        raise Unauthenticated("User has not been synced")
    return user


def get_current_user(
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise Unauthenticated("User has not been synced")
    return user


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def enforce_rate_limit(
    request: Request,
    user_id: str = Depends(require_user_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Count the request against the caller's window; raises ``RateLimited`` when over."""

    limiter.check(user_id, action=request.url.path.rstrip("/").rsplit("/", 1)[-1])
