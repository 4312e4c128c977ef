from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import ServiceError
from therapy_chat.models.database import Annotation
from therapy_chat.schemas.emotion import AnnotationRequest
from therapy_chat.services.database import DatabaseService, database_service

logger = get_logger(__name__)


async def annotate_message(
    request: AnnotationRequest,
    updated_by: str,
    db: Optional[DatabaseService] = None,
) -> Annotation:
    """Store (or replace) this therapist's correction of a tagged message."""
    db = db or database_service
    try:
        annotation = await db.upsert_annotation(
            source_id=request.source_id,
            source_type=request.source_type or "session",
            updated_by=updated_by,
            corrected_emotion=request.corrected_emotion,
            corrected_tone=request.corrected_tone,
            corrected_topic=request.corrected_topic,
            corrected_intensity=request.corrected_intensity,
            corrected_alignment_score=request.corrected_alignment_score,
            note=request.note,
            flag_reason=request.flag_reason,
            feedback_source="manual",
        )
    except SQLAlchemyError as e:
        logger.error("annotation_failed", source_id=request.source_id, error=str(e), exc_info=True)
        raise ServiceError("Annotation failed") from e

    logger.info("message_annotated", source_id=request.source_id, updated_by=updated_by)
    return annotation
