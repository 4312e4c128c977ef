import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from therapy_chat.models.base import BaseModel

TERMINAL_JOB_STATUSES = ("succeeded", "failed")


# ==================================================
# Fine-tune Snapshot
# ==================================================
class FineTuneSnapshot(BaseModel, table=True):
    """
    A named, versioned export of filtered training rows sent for fine-tuning.

    `(filter_hash, data_version)` is unique: exporting the same filters twice
    over unchanged data is rejected by the database itself.
    """
    __tablename__ = "fine_tune_snapshots"
    __table_args__ = (
        UniqueConstraint("filter_hash", "data_version", name="uq_snapshot_filter_data"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str
    version: str
    filters: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    filter_hash: str = Field(index=True)
    # Timestamp of the newest tag/annotation the export saw ("" when none)
    data_version: str = Field(default="")
    user_id: str = Field(foreign_key="users.id")

    model_version: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    job_id: Optional[str] = Field(default=None, index=True)
    job_status: str = Field(default="pending")
    retry_count: int = Field(default=0)
    archived: bool = Field(default=False)
    file_uploaded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ==================================================
# Export Lock
# ==================================================
class FineTuneLock(BaseModel, table=True):
    """
    Blocks repeated exports/retries until `locked_until`; swept once `locked_until` passes.
    """
    __tablename__ = "fine_tune_locks"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    snapshot_id: str = Field(foreign_key="fine_tune_snapshots.id", index=True)
    user_id: str
    filter_hash: Optional[str] = Field(default=None, index=True)
    context: str = Field(default="export")
    expires_at: datetime
    locked_until: datetime


# ==================================================
# Fine-tune Event
# ==================================================
class FineTuneEvent(BaseModel, table=True):
    """Status history of a snapshot's jobs, deduplicated per (snapshot, job)."""
    __tablename__ = "fine_tune_events"
    __table_args__ = (
        UniqueConstraint("snapshot_id", "job_id", name="uq_event_snapshot_job"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    snapshot_id: str = Field(foreign_key="fine_tune_snapshots.id", index=True)
    job_id: str = Field(index=True)
    user_id: Optional[str] = None
    status: str
    retry_reason: Optional[str] = None
    retry_count: int = Field(default=0)
    auto_retry: bool = Field(default=False)
    retry_origin: Optional[str] = None
    model_version: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    error_details: Optional[str] = None
    message: Optional[str] = None
