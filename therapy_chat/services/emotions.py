import json
import re
from typing import Any, Dict, Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import NotFoundError, ServiceError, UpstreamError, ValidationFailedError
from therapy_chat.models.database import EmotionLog
from therapy_chat.models.emotion import TONES
from therapy_chat.schemas.emotion import EmotionTag, HighRiskAlert
from therapy_chat.services.database import DatabaseService, database_service
from therapy_chat.services.email import EmailService, email_service
from therapy_chat.services.llm import LLMService, llm_service

logger = get_logger(__name__)

TAGGING_SYSTEM_PROMPT = """You are analyzing the emotional and goal alignment aspects of a therapy session message.
The session goal is: "{goal}".

Evaluate the last message based on both its emotion and how it relates to the session goal."""

TAGGING_INSTRUCTION = """Now analyze ONLY the most recent message and return a JSON in this format:

{
  "emotion": "string",
  "intensity": 0.0,
  "tone": "positive|negative|neutral",
  "topic": "string",
  "goal_alignment_score": 0.0
}"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def is_high_risk(intensity: Optional[float], tone: Optional[str]) -> bool:
    return tone == "negative" and intensity is not None and intensity >= settings.HIGH_RISK_INTENSITY


def parse_emotion_tag(raw: str) -> EmotionTag:
    """Parse the tagging model's JSON answer (code fences tolerated)."""
    try:
        data = json.loads(_FENCE.sub("", raw.strip()) or "{}")
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        return EmotionTag.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.error("emotion_tag_parse_failed", raw=raw[:500], error=str(e))
        raise ServiceError("Invalid AI response format", raw=raw) from e


# ==================================================
# Emotion Service
# ==================================================
class EmotionService:
    def __init__(
        self,
        db: Optional[DatabaseService] = None,
        llm: Optional[LLMService] = None,
        email: Optional[EmailService] = None,
    ):
        self.db = db or database_service
        self.llm = llm or llm_service
        self.email = email or email_service

    async def tag_message(self, source_id: str, user_id: Optional[str] = None) -> EmotionLog:
        """Tag one message with emotion, tone, intensity, topic and goal alignment."""
        message = await self.db.get_message(source_id)
        if message is None:
            raise NotFoundError("Failed to fetch message")

        session = await self.db.get_session(message.session_id)
        goal = (session.goal if session else None) or "Unknown goal"
        context = await self.db.get_messages(message.session_id, limit=settings.CONTEXT_MESSAGE_COUNT)

        prompt = [SystemMessage(content=TAGGING_SYSTEM_PROMPT.format(goal=goal))]
        for item in context:
            if item.role == "user":
                prompt.append(HumanMessage(content=item.content))
            else:
                prompt.append(AIMessage(content=item.content))
        prompt.append(HumanMessage(content=TAGGING_INSTRUCTION))

        try:
            raw = await self.llm.complete(prompt, model_name=settings.TAGGING_LLM_MODEL)
        except RuntimeError as e:
            raise ServiceError("Emotion tagging failed") from e

        tag = parse_emotion_tag(raw)
        if not tag.emotion:
            raise ValidationFailedError("No emotion detected", raw=raw)

        log = await self.db.create_emotion_log(
            source_id=source_id,
            source_type="session",
            session_id=message.session_id,
            user_id=user_id if message.role == "user" else None,
            emotion=tag.emotion,
            intensity=0.5 if tag.intensity is None else tag.intensity,
            tone=tag.tone or "neutral",
            topic=tag.topic or "Unknown",
            alignment_score=tag.goal_alignment_score,
        )
        logger.info("message_tagged", source_id=source_id, emotion=log.emotion, tone=log.tone, intensity=log.intensity)

        if message.role == "user" and is_high_risk(log.intensity, log.tone):
            alert = HighRiskAlert(
                emotion=log.emotion,
                intensity=log.intensity,
                tone=log.tone,
                messageId=source_id,
                role=message.role,
                link=f"{settings.SITE_URL}/chat",
            )
            try:
                await self.notify_high_risk(alert)
            except ServiceError as e:
                logger.error("high_risk_alert_failed", source_id=source_id, error=e.message)
        return log

    async def notify_high_risk(self, alert: HighRiskAlert) -> Dict[str, Any]:
        """Email every therapist the session is shared with when the tag is high-risk."""
        if alert.tone not in TONES:
            raise ValidationFailedError(
                'Invalid tone value. Allowed values are "positive", "negative", or "neutral".'
            )
        if not is_high_risk(alert.intensity, alert.tone):
            return {"notified": 0}

        message = await self.db.get_message(alert.messageId)
        if message is None:
            raise NotFoundError("Message not found")
        session = await self.db.get_session(message.session_id)
        if session is None:
            raise NotFoundError("Session not found")

        therapists = await self.db.get_users(session.shared_with, role="therapist")
        if not therapists:
            logger.warning("high_risk_no_therapists", session_id=session.id, message_id=alert.messageId)
            return {"notified": 0}

        review_link = f"{alert.link}/{session.id}?messageId={alert.messageId}"
        subject = "Urgent: High Intensity Negative Emotion Detected"
        html = (
            "<p>Hello Therapist,</p>"
            f"<p>A session has triggered a high intensity negative emotion ({alert.emotion} "
            f"with intensity {alert.intensity}). Please review the details and take necessary actions.</p>"
            f'<p>You can view the session here: <a href="{review_link}">View Session</a></p>'
            "<p>Best regards,<br/>Your AI Monitoring System</p>"
        )

        notified = 0
        for therapist in therapists:
            try:
                await self.email.send(therapist.email, subject, html)
                notified += 1
            except UpstreamError as e:
                logger.error("high_risk_email_failed", therapist_id=therapist.id, error=e.message)

        logger.info("high_risk_alert_sent", session_id=session.id, message_id=alert.messageId, notified=notified)
        return {"notified": notified}


emotion_service = EmotionService()
