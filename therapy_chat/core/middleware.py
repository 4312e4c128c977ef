import time
import uuid
from typing import Callable

from fastapi import Request
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from therapy_chat.core.config.logging import bind_context, clear_context
from therapy_chat.core.metrics import (
    http_request_duration_seconds,
    http_requests_total,
)

# Paths excluded from request metrics
_UNTRACKED_PATHS = ("/metrics", "/health")


def _endpoint_label(request: Request) -> str:
    """Route template (`/api/v1/chatbot/sessions/{session_id}/messages`) rather than the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


# ==================================================
# Metrics Middleware
# ==================================================
class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in _UNTRACKED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = _endpoint_label(request)
            http_requests_total.labels(method=request.method, endpoint=endpoint, status=status_code).inc()
            http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )


# ==================================================
# Logging Context Middleware
# ==================================================
class LoggingContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id and the (unverified) JWT subject before routing,
    so even rejected requests are logged with the caller's identity.
    The id is echoed back in `X-Request-ID`.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        clear_context()
        bind_context(request_id=request_id, path=request.url.path, method=request.method)

        authorization = request.headers.get("authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            try:
                subject = jwt.get_unverified_claims(token).get("sub")
            except JWTError:
                subject = None
            if subject:
                bind_context(subject_id=subject)

        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers["X-Request-ID"] = request_id
        return response
