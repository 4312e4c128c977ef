from typing import Any, Dict, Optional


# ==================================================
# Service Errors
# ==================================================
class ServiceError(Exception):
    """
    Base class for domain failures raised by the service layer.
    The API layer turns these into `{"error": message, ...}` JSON bodies.
    """

    status_code: int = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class ValidationFailedError(ServiceError):
    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401


class PermissionDeniedError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class LockedError(ServiceError):
    status_code = 423


class RetryLimitError(ServiceError):
    status_code = 429


class QuotaExceededError(ServiceError):
    status_code = 429

    def __init__(self, message: Optional[str] = None, **extra: Any):
        super().__init__(message or "Quota exceeded. Try again later.", **extra)


class UpstreamError(ServiceError):
    status_code = 502
