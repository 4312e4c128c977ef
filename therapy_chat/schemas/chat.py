import re
import uuid
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# ==================================================
# Chat Schemas
# ==================================================
class Message(BaseModel):
    """
    Represents a single message in the conversation history.
    Stored rows call the role column `message_role` in the training view; both are accepted.
    """
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["user", "assistant", "system"] = Field(
        ..., description="Who sent the message", validation_alias=AliasChoices("role", "message_role")
    )
    content: str = Field(..., description="The message content", min_length=1, max_length=3000)

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """
        Sanitization: Prevent basic XSS or injection attacks.
        """
        if re.search(r"<script.*?>.*?</script>", v, re.IGNORECASE | re.DOTALL):
            raise ValueError("Content contains potentially harmful script tags")

        if "\0" in v:
            raise ValueError("Content contains null bytes")
        return v


class StoredMessage(BaseModel):
    """A persisted message as returned by the API."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    role: str
    content: str
    created_at: datetime


class MessageCreate(Message):
    id: Optional[uuid.UUID] = Field(default=None, description="Client-generated id for optimistic inserts")


class ChatRequest(BaseModel):
    """
    Payload sent to the /chat endpoint.
    """
    messages: List[Message] = Field(..., min_length=1)
    goal: str = Field(..., max_length=500)


class ChatResponse(BaseModel):
    message: Message


class SummarizeRequest(BaseModel):
    messages: List[Message]


class SummarizeResponse(BaseModel):
    title: Optional[str] = None


class SaveSummaryRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)
    summary: str = Field(..., min_length=1)


class FirstMessageRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)
