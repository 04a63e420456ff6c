from fastapi import APIRouter

from notify_digest.api.v1.endpoints import unsubscribe

router = APIRouter()
router.include_router(unsubscribe.router)
