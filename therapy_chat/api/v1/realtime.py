from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from therapy_chat.api.v1.auth import can_view_session
from therapy_chat.core.config.logging import get_logger
from therapy_chat.schemas.presence import PresenceClientEvent, PresenceMeta
from therapy_chat.services.database import database_service
from therapy_chat.services.realtime import PresenceTracker, SessionDataSubscription, realtime_hub
from therapy_chat.utils.auth import verify_token

logger = get_logger(__name__)
router = APIRouter()

# Application-defined close codes
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403


async def _authenticate(token: Optional[str]):
    if not token:
        return None
    try:
        user_id = verify_token(token)
    except ValueError:
        return None
    return await database_service.get_user(user_id) if user_id else None


@router.websocket("/sessions/{session_id}")
async def session_socket(websocket: WebSocket, session_id: str, token: Optional[str] = Query(default=None)):
    """
    Live view of a chat session: presence of the other participants, their typing
    state, and (for therapists) new messages and emotion tags as they are stored.
    """
    user = await _authenticate(token)
    if user is None:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return
    session = await database_service.get_session(session_id)
    if session is None or not can_view_session(session, user):
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    await websocket.accept()

    async def send(frame: Dict[str, Any]) -> None:
        await websocket.send_json(frame)

    async def on_presence(others: List[PresenceMeta], typing: List[PresenceMeta]) -> None:
        await send(
            {
                "type": "presence",
                "others": [p.model_dump() for p in others],
                "typing": [p.model_dump() for p in typing],
            }
        )

    tracker = PresenceTracker(
        realtime_hub,
        session_id,
        user.id,
        name=user.full_name or user.email,
        avatar=user.avatar_url,
        on_change=on_presence,
    )
    subscription = SessionDataSubscription(
        realtime_hub,
        session_id,
        user.role,
        on_new_message=lambda record: send({"type": "message.insert", "record": record}),
        on_update_message=lambda record: send({"type": "message.update", "record": record}),
        on_new_log=lambda record: send({"type": "emotion_log.insert", "record": record}),
    )

    logger.info("realtime_connected", session_id=session_id, user_id=user.id, role=user.role)
    try:
        await subscription.subscribe()
        await tracker.join()
        await send({"type": "ready", "sessionId": session_id, "live": subscription.is_ready})

        while True:
            try:
                event = PresenceClientEvent.model_validate(await websocket.receive_json())
            except (ValidationError, ValueError):
                await send({"type": "error", "error": "Invalid event"})
                continue
            if event.type == "typing":
                await tracker.set_typing(event.typing)
            else:
                await send({"type": "pong"})
    except WebSocketDisconnect:
        logger.info("realtime_disconnected", session_id=session_id, user_id=user.id)
    finally:
        await tracker.leave()
        await subscription.close()
