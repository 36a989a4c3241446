"""Identity provider webhooks."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Header, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.errors import InvalidInput, Unauthenticated
from app.core.security import verify_webhook_signature
from app.database import get_db
from app.models import User, UserRole
from app.schemas import IdentityWebhookEvent
from app.services.access import hand_over_admin_roles
from app.services.change_events import member_record, publish_change, user_record
from app.services.onboarding import join_default_channel, upsert_user
from parley.realtime import ChangeAction

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Identity-Signature"


def _primary_email(data: dict) -> str | None:
    addresses = data.get("email_addresses") or []
    for entry in addresses:
        if isinstance(entry, dict) and entry.get("email_address"):
            return str(entry["email_address"])
    email = data.get("email")
    return str(email) if email else None


def _full_name(data: dict) -> str | None:
    parts = [data.get("first_name"), data.get("last_name")]
    joined = " ".join(str(part) for part in parts if part)
    return joined or data.get("name") or None


def _role(data: dict) -> UserRole:
    metadata = data.get("public_metadata") or {}
    return UserRole.ADMIN if str(metadata.get("role", "")).lower() == "admin" else UserRole.USER


@router.post("/identity", status_code=status.HTTP_204_NO_CONTENT)
async def identity_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    db: Session = Depends(get_db),
) -> Response:
    """Mirror user lifecycle events from the identity provider."""

    body = await request.body()
    if not verify_webhook_signature(body, signature):
        raise Unauthenticated("Invalid webhook signature")
    try:
        event = IdentityWebhookEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as exc:
        raise InvalidInput("Malformed webhook payload") from exc

    user_id = event.data.get("id")
    if not user_id:
        raise InvalidInput("Webhook payload has no user id")
    user_id = str(user_id)

    if event.type in ("user.created", "user.updated"):
        user, created = upsert_user(
            db,
            user_id=user_id,
            email=_primary_email(event.data),
            name=_full_name(event.data),
            avatar_ref=event.data.get("image_url"),
            role=_role(event.data),
        )
        membership = join_default_channel(user, db)
        db.commit()
        action = ChangeAction.INSERT if created else ChangeAction.UPDATE
        await publish_change("users", action, record=user_record(user))
        if membership is not None:
            await publish_change("channel_members", ChangeAction.INSERT, record=member_record(membership))
    elif event.type == "user.deleted":
        user = db.get(User, user_id)
        if user is not None:
            old = user_record(user)
            promoted = hand_over_admin_roles(user.id, db)
            db.delete(user)
            db.commit()
            await publish_change("users", ChangeAction.DELETE, old_record=old)
            for membership in promoted:
                await publish_change("channel_members", ChangeAction.UPDATE, record=member_record(membership))
    else:
        logger.info("Ignoring identity webhook", extra={"type": event.type})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
