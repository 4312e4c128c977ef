import uuid
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship

from therapy_chat.models.base import BaseModel

if TYPE_CHECKING:
    from therapy_chat.models.user import User


# ==================================================
# Session Model
# ==================================================
class ChatSession(BaseModel, table=True):
    """
    A conversation thread between a client and the assistant.
    Therapists listed in `shared_with` can follow and review it.
    """
    __tablename__ = "sessions"

    # String IDs (UUIDs) so sessions are hard to guess
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)

    title: str = Field(default="")
    summary: Optional[str] = None
    # Treatment goal the assistant keeps in mind
    goal: Optional[str] = None
    shared_with: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    reviewed: bool = Field(default=False)
    archived: bool = Field(default=False)

    user: "User" = Relationship(back_populates="sessions")
