import re
from datetime import UTC, datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.schemas.auth import Token
from therapy_chat.utils.sanitization import sanitize_string

logger = get_logger(__name__)

_JWT_FORMAT = re.compile(r"^[A-Za-z0-9-_]+\.[A-Za-z0-9-_]+\.[A-Za-z0-9-_]+$")


# ==================================================
# JWT Authentication Utilities
# ==================================================
def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> Token:
    """
    Creates a new JWT access token.

    Args:
        subject: The user ID the token authenticates
        expires_delta: Optional custom expiration time
    """
    now = datetime.now(UTC)
    expire = now + (expires_delta or timedelta(days=settings.JWT_ACCESS_TOKEN_EXPIRE_DAYS))
    to_encode = {
        "sub": subject,
        "exp": expire,
        "iat": now,
        # Unique per token, so a single token can be revoked later
        "jti": sanitize_string(f"{subject}-{now.timestamp()}"),
    }
    encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return Token(access_token=encoded_jwt, expires_at=expire)


def verify_token(token: str) -> Optional[str]:
    """
    Decodes and verifies a JWT token. Returns the subject (user ID) if valid.
    """
    if not _JWT_FORMAT.match(token):
        logger.warning("token_suspicious_format")
        raise ValueError("Token format is invalid - expected JWT format")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning("token_verification_failed", error=str(e))
        return None

    subject = payload.get("sub")
    if subject is None:
        logger.warning("token_missing_subject")
        return None
    return subject
