from fastapi import APIRouter, Depends

from therapy_chat.api.v1.auth import require_service_key
from therapy_chat.core.config.logging import get_logger
from therapy_chat.schemas.emotion import HighRiskAlert
from therapy_chat.schemas.export import FineTuneStatusPayload
from therapy_chat.services.emotions import emotion_service
from therapy_chat.services.exports import export_service
from therapy_chat.services.fine_tune import fine_tune_notifier

logger = get_logger(__name__)

# ==================================================
# Backend functions (scheduler / worker callbacks)
# ==================================================
router = APIRouter(dependencies=[Depends(require_service_key)])


@router.post("/clear-expired-locks")
async def clear_expired_locks():
    deleted = await export_service.clear_expired_locks()
    return {"success": True, "deleted": deleted}


@router.post("/notify-fine-tune-status")
async def notify_fine_tune_status(payload: FineTuneStatusPayload):
    return await fine_tune_notifier.handle(payload)


@router.post("/notify-high-risk")
async def notify_high_risk(alert: HighRiskAlert):
    result = await emotion_service.notify_high_risk(alert)
    return {"success": True, **result}
