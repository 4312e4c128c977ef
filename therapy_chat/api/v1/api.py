from fastapi import APIRouter

from therapy_chat.api.v1.analytics import router as analytics_router
from therapy_chat.api.v1.annotations import router as annotations_router
from therapy_chat.api.v1.auth import router as auth_router
from therapy_chat.api.v1.chatbot import router as chatbot_router
from therapy_chat.api.v1.exports import router as exports_router
from therapy_chat.api.v1.exports import snapshots_router
from therapy_chat.api.v1.functions import router as functions_router
from therapy_chat.api.v1.invites import admin_router
from therapy_chat.api.v1.invites import router as invites_router
from therapy_chat.api.v1.realtime import router as realtime_router
from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger

logger = get_logger(__name__)

# ==================================================
# API Router Aggregator
# ==================================================
api_router = APIRouter()

# e.g. /api/v1/auth/login
api_router.include_router(auth_router, prefix="/auth", tags=["auth"])
# e.g. /api/v1/chatbot/chat
api_router.include_router(chatbot_router, prefix="/chatbot", tags=["chatbot"])
api_router.include_router(annotations_router, prefix="/annotations", tags=["annotations"])
api_router.include_router(exports_router, prefix="/exports", tags=["exports"])
api_router.include_router(snapshots_router, prefix="/snapshots", tags=["exports"])
api_router.include_router(invites_router, prefix="/invites", tags=["invites"])
api_router.include_router(admin_router, prefix="/admin", tags=["admin"])
api_router.include_router(functions_router, prefix="/functions", tags=["functions"])
api_router.include_router(analytics_router, prefix="/analytics", tags=["analytics"])
api_router.include_router(realtime_router, prefix="/realtime", tags=["realtime"])


@api_router.get("/health")
async def health_check():
    """
    Liveness probe for load balancers.
    """
    return {"status": "healthy", "version": settings.VERSION}
