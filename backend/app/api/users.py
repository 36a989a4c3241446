"""Current-user endpoints: first sign-in sync, profile and status."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_identity
from app.config import get_settings
from app.core.errors import InvalidInput
from app.core.security import Identity
from app.database import get_db
from app.models import User
from app.schemas import UserProfileUpdate, UserRead, UserStatusUpdate
from app.services.change_events import member_record, publish_change, user_record
from app.services.onboarding import sync_user
from parley.realtime import ChangeAction

router = APIRouter(prefix="/users", tags=["users"])

settings = get_settings()


@router.post("/sync", response_model=UserRead)
async def sync_current_user(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> User:
    """Upsert the signed-in user and join them to the default channel."""

    user, membership = sync_user(identity, db)
    await publish_change("users", ChangeAction.UPDATE, record=user_record(user))
    if membership is not None:
        await publish_change("channel_members", ChangeAction.INSERT, record=member_record(membership))
    return user


@router.get("/me", response_model=UserRead)
def read_current_user(current_user: User = Depends(get_current_user)) -> User:
    return current_user


@router.patch("/me", response_model=UserRead)
async def update_current_user(
    payload: UserProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    update_data = payload.model_dump(exclude_unset=True)
    if update_data.get("name") is not None:
        current_user.name = update_data["name"]
    if "bio" in update_data:
        current_user.bio = update_data["bio"]
    db.commit()
    db.refresh(current_user)
    await publish_change("users", ChangeAction.UPDATE, record=user_record(current_user))
    return current_user


@router.put("/me/status", response_model=UserRead)
async def update_current_user_status(
    payload: UserStatusUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    """Set presence and the custom status line."""

    update_data = payload.model_dump(exclude_unset=True)
    if "status_message" in update_data:
        message = (update_data["status_message"] or "").strip()
        if len(message) > settings.status_message_max_length:
            raise InvalidInput(
                f"Status message must be at most {settings.status_message_max_length} characters"
            )
        current_user.status_message = message or None
    if "status_emoji" in update_data:
        current_user.status_emoji = update_data["status_emoji"] or None
    if update_data.get("status") is not None:
        current_user.status = update_data["status"]
    db.commit()
    db.refresh(current_user)
    await publish_change("users", ChangeAction.UPDATE, record=user_record(current_user))
    return current_user
