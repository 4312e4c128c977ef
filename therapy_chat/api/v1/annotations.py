from fastapi import APIRouter, Depends

from therapy_chat.api.v1.auth import require_roles
from therapy_chat.models.user import User
from therapy_chat.schemas.emotion import AnnotationRequest
from therapy_chat.services.annotations import annotate_message

router = APIRouter()


@router.post("/annotate-message")
async def annotate(body: AnnotationRequest, user: User = Depends(require_roles("therapist", "admin"))):
    """Save the caller's correction of a tagged message."""
    await annotate_message(body, updated_by=user.id)
    return {"success": True}
