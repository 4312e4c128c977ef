from fastapi import APIRouter, Depends

from therapy_chat.api.v1.auth import get_accessible_session, get_current_user
from therapy_chat.models.user import User
from therapy_chat.schemas.emotion import EmotionLogResponse
from therapy_chat.services.analytics import session_analytics
from therapy_chat.services.database import database_service

router = APIRouter()


@router.get("/sessions/{session_id}")
async def get_session_analytics(session_id: str, user: User = Depends(get_current_user)):
    """Session score and severity breakdown over the session's emotion logs."""
    await get_accessible_session(session_id, user)
    logs = await database_service.get_session_emotion_logs(session_id)
    return {
        "sessionId": session_id,
        **session_analytics(logs),
        "logs": [EmotionLogResponse.model_validate(log).model_dump(mode="json") for log in logs],
    }
