import uuid

from sqlmodel import Field

from therapy_chat.models.base import BaseModel

MESSAGE_ROLES = ("user", "assistant", "system")


class Message(BaseModel, table=True):
    """A single chat message. Never edited after insert."""
    __tablename__ = "messages"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    session_id: str = Field(foreign_key="sessions.id", index=True)
    role: str
    content: str
