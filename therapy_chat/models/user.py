import uuid
from typing import TYPE_CHECKING, List, Optional

import bcrypt
from sqlmodel import Field, Relationship

from therapy_chat.models.base import BaseModel

if TYPE_CHECKING:
    from therapy_chat.models.session import ChatSession

# Roles recognised by the access checks
USER_ROLES = ("user", "therapist", "admin")


# ==================================================
# User Model
# ==================================================
class User(BaseModel, table=True):
    """
    An account: a client chatting with the assistant, a therapist reviewing
    sessions, or an admin managing therapists and exports.
    """
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    email: str = Field(unique=True, index=True)
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = Field(default="user")
    hashed_password: str = Field(default="")

    sessions: List["ChatSession"] = Relationship(back_populates="user")

    def verify_password(self, password: str) -> bool:
        if not self.hashed_password:
            return False
        return bcrypt.checkpw(password.encode("utf-8"), self.hashed_password.encode("utf-8"))

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt()
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")
