from datetime import datetime

from sqlmodel import Field, SQLModel

from therapy_chat.utils.dates import utc_now


# ==================================================
# Base Model
# ==================================================
class BaseModel(SQLModel):
    """
    Shared columns for every table.
    """
    created_at: datetime = Field(default_factory=utc_now)
