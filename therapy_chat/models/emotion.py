import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from therapy_chat.models.base import BaseModel
from therapy_chat.utils.dates import utc_now

SOURCE_TYPES = ("session", "journal", "reflection")
TONES = ("positive", "negative", "neutral")


# ==================================================
# Emotion Log (model-generated tag)
# ==================================================
class EmotionLog(BaseModel, table=True):
    """
    Emotion / tone / intensity / topic the tagger derived for one message.
    """
    __tablename__ = "emotion_logs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    source_id: str = Field(index=True)
    source_type: str = Field(default="session")
    session_id: Optional[str] = Field(default=None, index=True)
    user_id: Optional[str] = None

    emotion: str
    tone: str = Field(default="neutral")
    intensity: float = Field(default=0.5)
    topic: Optional[str] = None
    alignment_score: Optional[float] = None


# ==================================================
# Annotation (therapist correction)
# ==================================================
class Annotation(BaseModel, table=True):
    """
    A therapist's manual correction of a tagged source.
    At most one row per (source, therapist): writes are upserts on that key.
    """
    __tablename__ = "annotations"
    __table_args__ = (
        UniqueConstraint("source_id", "source_type", "updated_by", name="uq_annotation_source_therapist"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    source_id: str = Field(index=True)
    source_type: str = Field(default="session")
    updated_by: str = Field(foreign_key="users.id")

    corrected_emotion: Optional[str] = None
    corrected_tone: Optional[str] = None
    corrected_topic: Optional[str] = None
    corrected_intensity: Optional[float] = None
    corrected_alignment_score: Optional[float] = None
    note: Optional[str] = None
    flag_reason: Optional[str] = None
    feedback_source: str = Field(default="manual")
    updated_at: datetime = Field(default_factory=utc_now)
