from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# ==================================================
# Export Filters
# ==================================================
class ExportFilterOptions(BaseModel):
    """
    Filters for the training-data export. Accepts camelCase (as sent by the
    dashboard) or snake_case keys.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    emotions: Optional[List[str]] = None
    tones: Optional[List[str]] = None
    topics: Optional[List[str]] = None
    intensity: Optional[Tuple[float, float]] = None
    alignment_score: Optional[Tuple[float, float]] = None
    source_types: Optional[List[str]] = None
    include_corrected: bool = False
    high_risk_only: bool = False
    users: Optional[List[str]] = None
    reviewed_by: Optional[List[str]] = None
    supporting_therapists: Optional[List[str]] = None
    message_role: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    top_n: Optional[int] = Field(default=None, ge=1)
    score_cutoff: Optional[float] = None
    flagged_only: bool = False
    flag_reasons: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_ranges(self) -> "ExportFilterOptions":
        for name in ("intensity", "alignment_score"):
            bounds = getattr(self, name)
            if bounds is not None and bounds[0] > bounds[1]:
                raise ValueError(f"{name} lower bound exceeds upper bound")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self

    def canonical(self) -> Dict[str, Any]:
        """JSON-ready dict of the filters that are actually set."""
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True)


# ==================================================
# Training Rows
# ==================================================
class TrainingRow(BaseModel):
    """One row of the training view: a tagged message with any correction applied."""
    source_type: str
    source_id: str
    message_id: str
    session_id: str
    user_id: Optional[str] = None
    role: str
    content: str
    emotion: Optional[str] = None
    tone: Optional[str] = None
    intensity: Optional[float] = None
    topic: Optional[str] = None
    alignment_score: Optional[float] = None
    note: Optional[str] = None
    flag_reason: Optional[str] = None
    annotation_updated_at: Optional[datetime] = None
    annotation_updated_by: Optional[str] = None
    tagged_at: datetime
    score: float = 0.0
    shared_with: List[str] = Field(default_factory=list, exclude=True)


class EmotionSummary(BaseModel):
    emotion: str
    count: int
    avg_score: float


class PreviewResponse(BaseModel):
    annotations: List[TrainingRow]
    total: int
    summary: List[EmotionSummary]


# ==================================================
# Snapshots / Exports
# ==================================================
class ExportRequest(BaseModel):
    filters: ExportFilterOptions = Field(default_factory=ExportFilterOptions)
    name: str = Field(..., min_length=1, max_length=200)


class ExportResponse(BaseModel):
    success: bool = True
    jobId: str
    filePath: str
    snapshotId: str


class SnapshotCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    version: str = Field(..., min_length=1, max_length=100)
    filters: ExportFilterOptions


class DuplicateCheckRequest(BaseModel):
    filterHash: str = Field(..., min_length=1)


class RetryRequest(BaseModel):
    snapshotId: Optional[str] = None
    job_id: Optional[str] = None
    retry_reason: str = Field(default="Manual retry")
    auto_retry: bool = Field(default=False)
    retry_origin: str = Field(default="manual")


class FineTuneStatusPayload(BaseModel):
    """Body of the fine-tune status notification."""
    id: str = Field(..., min_length=1, description="Fine-tune job ID")
    status: str
    model: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    snapshotId: Optional[str] = None
