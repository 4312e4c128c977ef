from typing import Iterable, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import NotFoundError, ServiceError
from therapy_chat.models.database import ChatSession
from therapy_chat.schemas.chat import Message
from therapy_chat.services.database import DatabaseService, database_service
from therapy_chat.services.llm import LLMService, llm_service

logger = get_logger(__name__)

SUMMARY_PROMPT = "Summarize the conversation in one short sentence."
SESSION_SUMMARY_PROMPT = (
    "You are assisting a therapist. Summarize this therapy session in a short paragraph: "
    "the main concerns raised, the client's emotional state and any progress toward the goal."
)
CHAT_PROMPT = (
    'You are a therapist assistant helping a user based on the treatment goal: "{goal}". '
    "Respond thoughtfully and empathetically, keeping this goal in mind."
)
FIRST_MESSAGE_PROMPT = (
    "You are a compassionate AI therapist preparing a message to start a therapy session. "
    "The user is working toward a specific goal in their treatment plan. Based on the treatment goal "
    "and current session number, generate an encouraging, relevant first message that sets a safe and "
    "welcoming tone. If past conversation context is available, reflect awareness of it."
)
SESSION_ALREADY_STARTED = "Session already started"


def to_langchain(messages: Iterable[Message]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for message in messages:
        if message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        elif message.role == "system":
            converted.append(SystemMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


# ==================================================
# Session Service
# ==================================================
class SessionService:
    """Chat replies, summaries and opening messages for chat sessions."""

    def __init__(self, db: Optional[DatabaseService] = None, llm: Optional[LLMService] = None):
        self.db = db or database_service
        self.llm = llm or llm_service

    async def _complete(self, prompt: List[BaseMessage], model_name: str, failure: str, **kwargs) -> str:
        try:
            return await self.llm.complete(prompt, model_name=model_name, **kwargs)
        except RuntimeError as e:
            logger.error("llm_completion_failed", failure=failure, error=str(e))
            raise ServiceError(failure) from e

    async def summarize_title(self, messages: List[Message]) -> Optional[str]:
        prompt = [SystemMessage(content=SUMMARY_PROMPT), *to_langchain(messages)]
        title = await self._complete(prompt, settings.SUMMARY_LLM_MODEL, "Failed to generate summary", temperature=0.3)
        return title or None

    async def save_summary(self, session_id: str, summary: str) -> ChatSession:
        if await self.db.get_session(session_id) is None:
            raise NotFoundError("Session not found")
        session = await self.db.update_session_summary(session_id, summary)
        logger.info("session_summary_saved", session_id=session_id)
        return session

    async def summarize_session(self, session_id: str) -> str:
        """Summarize the most recent messages of a stored session and persist the summary."""
        session = await self.db.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found")

        history = await self.db.get_messages(session_id, limit=settings.SUMMARY_MESSAGE_COUNT)
        if not history:
            raise ServiceError("No messages to summarize")

        prompt = [
            SystemMessage(content=SESSION_SUMMARY_PROMPT),
            *to_langchain(Message(role=m.role, content=m.content) for m in history),
        ]
        summary = await self._complete(prompt, settings.SUMMARY_LLM_MODEL, "Failed to generate summary")
        if not summary:
            raise ServiceError("No summary generated")

        await self.db.update_session_summary(session_id, summary)
        logger.info("session_summarized", session_id=session_id, message_count=len(history))
        return summary

    async def chat(self, messages: List[Message], goal: str) -> Message:
        prompt = [SystemMessage(content=CHAT_PROMPT.format(goal=goal)), *to_langchain(messages)]
        reply = await self._complete(prompt, settings.DEFAULT_LLM_MODEL, "Failed to generate message")
        if not reply:
            raise ServiceError("Failed to generate message")
        return Message(role="assistant", content=reply)

    async def generate_first_message(self, session_id: str) -> str:
        session = await self.db.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        if await self.db.count_messages(session_id) > 0:
            return SESSION_ALREADY_STARTED

        owner_sessions = await self.db.get_user_sessions(session.user_id)
        ids = [s.id for s in owner_sessions]
        index = ids.index(session_id) if session_id in ids else 0
        session_number = index + 1

        previous = await self.db.get_recent_messages_for_sessions(ids[:index], limit=2)
        prompt: List[BaseMessage] = [
            SystemMessage(content=FIRST_MESSAGE_PROMPT),
            HumanMessage(content=f"Goal: {session.goal or 'Not specified'}\nSession number: {session_number}"),
        ]
        for item in previous:
            if item.role == "assistant":
                prompt.append(AIMessage(content=item.content))
            else:
                prompt.append(HumanMessage(content=item.content))

        message = await self._complete(
            prompt, settings.SUMMARY_LLM_MODEL, "Failed to generate message", temperature=0.3
        )
        if not message:
            raise ServiceError("No message generated")
        logger.info("first_message_generated", session_id=session_id, session_number=session_number)
        return message


session_service = SessionService()
