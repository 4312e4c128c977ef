from typing import Literal, Optional

from pydantic import BaseModel, Field


class PresenceMeta(BaseModel):
    """
    One participant as derived from a presence channel.
    """
    id: Optional[str] = None
    name: str = Field(default="Anonymous")
    avatar: str = Field(default="")
    activity: str = Field(default="Idle")
    typing: bool = Field(default=False)


class PresenceClientEvent(BaseModel):
    """Frames a WebSocket client may send."""
    type: Literal["typing", "ping"]
    typing: bool = Field(default=False)
