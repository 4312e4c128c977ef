from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, SecretStr


# ==================================================
# Auth Schemas
# ==================================================
class Token(BaseModel):
    access_token: str
    token_type: str = Field(default="bearer")
    expires_at: datetime


class TokenResponse(Token):
    pass


class UserCreate(BaseModel):
    email: EmailStr
    password: SecretStr = Field(..., min_length=8, max_length=64)
    full_name: Optional[str] = Field(default=None, max_length=120)


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    token: Token


class SessionCreate(BaseModel):
    title: str = Field(default="", max_length=200)
    goal: Optional[str] = Field(default=None, max_length=500)
    shared_with: list[str] = Field(default_factory=list)


class SessionResponse(BaseModel):
    session_id: str
    title: str
    summary: Optional[str] = None
    goal: Optional[str] = None
    shared_with: list[str] = Field(default_factory=list)
    created_at: datetime


class UserProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str


class SessionRename(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
