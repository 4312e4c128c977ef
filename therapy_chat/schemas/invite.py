import uuid
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class InviteRequest(BaseModel):
    email: EmailStr
    team_id: uuid.UUID


class JoinTeamRequest(BaseModel):
    email: EmailStr
    team_id: uuid.UUID
    token: str = Field(..., min_length=1)


class AdminInviteRequest(BaseModel):
    """Either retry an existing invite (`invite_id`) or create one (`email`), never both."""
    invite_id: Optional[uuid.UUID] = None
    email: Optional[EmailStr] = None

    @model_validator(mode="after")
    def exactly_one(self) -> "AdminInviteRequest":
        if bool(self.invite_id) == bool(self.email):
            raise ValueError("Provide either invite_id or email, but not both.")
        return self
