from typing import Optional

import httpx

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import UpstreamError

logger = get_logger(__name__)


class EmailError(UpstreamError):
    """The mail provider rejected or never received the message."""


# ==================================================
# Email Service (SendGrid v3)
# ==================================================
class EmailService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.api_url = api_url or settings.SENDGRID_API_URL
        self.timeout = timeout
        self._transport = transport

    async def send(self, to: str, subject: str, html: str) -> None:
        """Send one HTML email. Raises `EmailError` when delivery is refused."""
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": settings.SENDER_EMAIL, "name": settings.SENDER_NAME},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("email_send_failed", to=to, subject=subject, error=str(e))
            raise EmailError(f"Email delivery failed: {e}") from e

        if response.status_code >= 400:
            logger.error("email_rejected", to=to, status_code=response.status_code, body=response.text[:500])
            raise EmailError(f"Email delivery failed: {response.text or response.status_code}")

        logger.info("email_sent", to=to, subject=subject)


email_service = EmailService()
