from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from therapy_chat.api.v1.auth import require_roles
from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.limiter import limiter
from therapy_chat.models.user import User
from therapy_chat.schemas.export import (
    DuplicateCheckRequest,
    ExportFilterOptions,
    ExportRequest,
    ExportResponse,
    PreviewResponse,
    RetryRequest,
    SnapshotCreate,
)
from therapy_chat.services.exports import export_service

logger = get_logger(__name__)

router = APIRouter()
snapshots_router = APIRouter()

_reviewers = require_roles("therapist", "admin")


# ==================================================
# Training exports
# ==================================================
@router.post("/preview", response_model=PreviewResponse)
async def preview_export(filters: ExportFilterOptions, user: User = Depends(_reviewers)):
    """Rows the given filters would export, with a per-emotion summary."""
    return await export_service.preview(filters)


@router.post("/fine-tune", response_model=ExportResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["export"][0])
async def export_fine_tune(request: Request, body: ExportRequest, user: User = Depends(_reviewers)):
    return await export_service.create_fine_tune(user.id, body.filters, body.name)


@router.get("/training-csv")
async def export_training_csv(user: User = Depends(_reviewers)):
    csv_text = await export_service.training_csv()
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="emotion_training_data.csv"'},
    )


@router.post("/retry-failed")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["export"][0])
async def retry_failed(request: Request, body: RetryRequest, user: User = Depends(_reviewers)):
    return await export_service.retry_failed(user.id, body)


# ==================================================
# Snapshots
# ==================================================
@snapshots_router.post("")
async def create_snapshot(body: SnapshotCreate, user: User = Depends(_reviewers)):
    snapshot = await export_service.create_snapshot(user.id, body)
    return {"success": True, "snapshot": snapshot.model_dump(mode="json")}


@snapshots_router.post("/check-duplicate")
async def check_duplicate(body: DuplicateCheckRequest, user: User = Depends(_reviewers)):
    return {"duplicate": await export_service.is_duplicate(body.filterHash)}
