"""
Database Models Export.
This allows simple imports like: `from therapy_chat.models.database import User, ChatSession`
"""
from therapy_chat.models.audit import AdminAuditLog
from therapy_chat.models.emotion import Annotation, EmotionLog
from therapy_chat.models.invite import InviteLog, Team, TeamMember
from therapy_chat.models.message import Message
from therapy_chat.models.session import ChatSession
from therapy_chat.models.snapshot import FineTuneEvent, FineTuneLock, FineTuneSnapshot
from therapy_chat.models.user import User

# Explicitly define what is exported
__all__ = [
    "AdminAuditLog",
    "Annotation",
    "ChatSession",
    "EmotionLog",
    "FineTuneEvent",
    "FineTuneLock",
    "FineTuneSnapshot",
    "InviteLog",
    "Message",
    "Team",
    "TeamMember",
    "User",
]
