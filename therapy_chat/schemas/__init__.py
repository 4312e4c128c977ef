# Re-export schemas so "from therapy_chat.schemas import Message, ExportFilterOptions" works
from therapy_chat.schemas.auth import Token
from therapy_chat.schemas.chat import ChatRequest, ChatResponse, Message
from therapy_chat.schemas.export import ExportFilterOptions, TrainingRow
from therapy_chat.schemas.presence import PresenceMeta

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "ExportFilterOptions",
    "Message",
    "PresenceMeta",
    "Token",
    "TrainingRow",
]
