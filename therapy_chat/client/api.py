"""Thin async client for the therapy chat HTTP API."""

import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import httpx

from therapy_chat.client.state import reconcile
from therapy_chat.core.config.logging import get_logger
from therapy_chat.schemas.chat import Message, StoredMessage
from therapy_chat.utils.dates import utc_now

logger = get_logger(__name__)

NO_SUMMARY = "No summary generated."


class ApiError(Exception):
    """Non-2xx response; `message` is the server's `error` field when it sent one."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class ApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    @asynccontextmanager
    async def _client(self):
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            yield client

    async def _post(self, path: str, payload: Dict[str, Any], fallback_error: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error("api_request_failed", path=path, error=str(e))
            raise ApiError(fallback_error) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            message = body.get("error") if isinstance(body, dict) else None
            logger.warning("api_error_response", path=path, status_code=response.status_code, error=message)
            raise ApiError(message or fallback_error, status=response.status_code)
        return body

    async def save_summary_to_db(self, session_id: str, summary: str) -> Dict[str, Any]:
        """Store a session summary; returns the parsed body, e.g. {"success": True}."""
        return await self._post(
            "/chatbot/save-summary",
            {"sessionId": session_id, "summary": summary},
            "Failed to save summary",
        )

    async def summarize_session(self, messages: Sequence[Message]) -> str:
        body = await self._post(
            "/chatbot/summarize-title",
            {"messages": [m.model_dump() for m in messages]},
            "Failed to summarize session",
        )
        return body.get("title") or NO_SUMMARY

    async def send_message(
        self,
        session_id: str,
        role: str,
        content: str,
        current: Sequence[StoredMessage] = (),
    ) -> List[StoredMessage]:
        """
        Append a message optimistically and persist it.

        Returns the reconciled list. On failure the provisional record is
        dropped and the error re-raised, so callers can restore `current`.
        """
        provisional = StoredMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            created_at=utc_now(),
        )
        optimistic = list(current) + [provisional]

        body = await self._post(
            f"/chatbot/sessions/{session_id}/messages",
            {"id": provisional.id, "role": role, "content": content},
            "Failed to send message",
        )
        confirmed = StoredMessage.model_validate(body)
        return reconcile(optimistic, [confirmed], key="id")
