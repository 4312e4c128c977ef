from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TagEmotionRequest(BaseModel):
    source_id: str = Field(..., min_length=1, description="Message ID to tag")


class EmotionTag(BaseModel):
    """Structured answer expected from the tagging model."""
    emotion: Optional[str] = None
    intensity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tone: Optional[str] = None
    topic: Optional[str] = None
    goal_alignment_score: Optional[float] = None


class EmotionLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_id: str
    source_type: str
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    emotion: str
    tone: str
    intensity: float
    topic: Optional[str] = None
    alignment_score: Optional[float] = None
    created_at: datetime


class HighRiskAlert(BaseModel):
    emotion: str = Field(..., min_length=1)
    intensity: float = Field(..., gt=0.0)
    tone: str = Field(..., min_length=1)
    messageId: str = Field(..., min_length=1)
    link: str = Field(..., min_length=1)
    role: Optional[str] = None


class AnnotationRequest(BaseModel):
    source_type: Optional[Literal["session", "journal", "reflection"]] = None
    source_id: str = Field(..., min_length=1)
    corrected_emotion: Optional[str] = None
    corrected_tone: Optional[str] = None
    corrected_topic: Optional[str] = None
    corrected_intensity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    corrected_alignment_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    note: Optional[str] = Field(default=None, max_length=2000)
    flag_reason: Optional[str] = Field(default=None, max_length=200)
