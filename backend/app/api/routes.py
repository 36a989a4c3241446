from fastapi import APIRouter

from app.api.channels import router as channels_router
from app.api.messages import router as messages_router
from app.api.messages import search_router as message_search_router
from app.api.users import router as users_router
from app.api.webhooks import router as webhooks_router

router = APIRouter()

router.include_router(channels_router)
router.include_router(messages_router)
router.include_router(message_search_router)
router.include_router(users_router)
router.include_router(webhooks_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Parley API"}
