import uuid
from typing import Optional

from sqlmodel import Field

from therapy_chat.models.base import BaseModel


class AdminAuditLog(BaseModel, table=True):
    """Append-only record of admin actions."""
    __tablename__ = "admin_audit_logs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    actor_id: Optional[str] = None
    action: str
    details: Optional[str] = None
    note: Optional[str] = None
