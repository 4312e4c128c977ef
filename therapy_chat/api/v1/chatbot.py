from typing import List

from fastapi import (
    APIRouter,
    Depends,
    Request,
)

from therapy_chat.api.v1.auth import get_accessible_session, get_current_user, require_roles
from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.limiter import limiter
from therapy_chat.models.user import User
from therapy_chat.schemas.chat import (
    ChatRequest,
    ChatResponse,
    FirstMessageRequest,
    MessageCreate,
    SaveSummaryRequest,
    StoredMessage,
    SummarizeRequest,
    SummarizeResponse,
)
from therapy_chat.schemas.emotion import EmotionLogResponse, TagEmotionRequest
from therapy_chat.services.database import database_service
from therapy_chat.services.emotions import emotion_service
from therapy_chat.services.sessions import session_service

logger = get_logger(__name__)
router = APIRouter()


# ==================================================
# Assistant
# ==================================================
@router.post("/chat", response_model=ChatResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["chat"][0])
async def chat(
    request: Request,
    chat_request: ChatRequest,
    user: User = Depends(get_current_user),
):
    """
    Reply to the conversation so far, keeping the treatment goal in mind.
    """
    logger.info("chat_request_received", message_count=len(chat_request.messages))
    reply = await session_service.chat(chat_request.messages, chat_request.goal)
    logger.info("chat_request_processed")
    return ChatResponse(message=reply)


@router.post("/summarize-title", response_model=SummarizeResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["summarize"][0])
async def summarize_title(
    request: Request,
    body: SummarizeRequest,
    user: User = Depends(get_current_user),
):
    """One-sentence summary of a conversation, used as the session title."""
    title = await session_service.summarize_title(body.messages)
    return SummarizeResponse(title=title)


@router.post("/generate-first-message")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["chat"][0])
async def generate_first_message(
    request: Request,
    body: FirstMessageRequest,
    user: User = Depends(get_current_user),
):
    await get_accessible_session(body.sessionId, user)
    message = await session_service.generate_first_message(body.sessionId)
    return {"message": message}


# ==================================================
# Sessions
# ==================================================
@router.post("/save-summary")
async def save_summary(body: SaveSummaryRequest, user: User = Depends(get_current_user)):
    await get_accessible_session(body.sessionId, user)
    await session_service.save_summary(body.sessionId, body.summary)
    return {"success": True}


@router.post("/sessions/{session_id}/summarize")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["summarize"][0])
async def summarize_session(request: Request, session_id: str, user: User = Depends(get_current_user)):
    """Summarize the latest messages of a stored session and save the summary."""
    await get_accessible_session(session_id, user)
    summary = await session_service.summarize_session(session_id)
    return {"summary": summary}


@router.get("/sessions/{session_id}/messages", response_model=List[StoredMessage])
async def list_messages(session_id: str, user: User = Depends(get_current_user)):
    await get_accessible_session(session_id, user)
    messages = await database_service.get_messages(session_id)
    return [StoredMessage.model_validate(message) for message in messages]


@router.post("/sessions/{session_id}/messages", response_model=StoredMessage)
async def create_message(session_id: str, body: MessageCreate, user: User = Depends(get_current_user)):
    """Persist a message; live viewers of the session are notified."""
    await get_accessible_session(session_id, user)
    message = await database_service.create_message(
        session_id, body.role, body.content, message_id=str(body.id) if body.id else None
    )
    logger.info("message_saved", session_id=session_id, message_id=message.id, role=message.role)
    return StoredMessage.model_validate(message)


@router.post("/sessions/{session_id}/reviewed")
async def mark_reviewed(session_id: str, user: User = Depends(require_roles("therapist", "admin"))):
    await get_accessible_session(session_id, user)
    await database_service.mark_session_reviewed(session_id)
    logger.info("session_marked_reviewed", session_id=session_id)
    return {"success": True, "reviewed": True}


# ==================================================
# Emotion tagging
# ==================================================
@router.post("/tag-emotion", response_model=EmotionLogResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["tag_emotion"][0])
async def tag_emotion(request: Request, body: TagEmotionRequest, user: User = Depends(get_current_user)):
    log = await emotion_service.tag_message(body.source_id, user_id=user.id)
    return EmotionLogResponse.model_validate(log)
