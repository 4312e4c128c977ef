import secrets
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from therapy_chat.models.base import BaseModel

# pending -> sent -> accepted, or -> failed
INVITE_STATUSES = ("pending", "sent", "accepted", "failed")


class InviteLog(BaseModel, table=True):
    """
    Lifecycle of one email invitation, either to a team (token link)
    or to become a therapist (admin invite).
    """
    __tablename__ = "invite_logs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    token: str = Field(default_factory=lambda: secrets.token_urlsafe(32), index=True)
    to_email: str = Field(index=True)
    team_id: Optional[str] = Field(default=None, index=True)
    inviter_id: Optional[str] = None
    status: str = Field(default="pending")
    retry_count: int = Field(default=0)
    last_error: Optional[str] = None
    last_retry_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    accepted_at: Optional[datetime] = None


class Team(BaseModel, table=True):
    __tablename__ = "teams"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str
    owner_id: Optional[str] = None


class TeamMember(BaseModel, table=True):
    __tablename__ = "team_members"
    __table_args__ = (UniqueConstraint("team_id", "user_id", name="uq_team_member"),)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    team_id: str = Field(index=True)
    user_id: str = Field(foreign_key="users.id")
