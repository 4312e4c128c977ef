from slowapi import Limiter
from slowapi.util import get_remote_address
from therapy_chat.core.config import settings

# ==================================================
# Rate Limiter Configuration
# ==================================================
# Keyed by client IP. Behind a proxy, `key_func` has to read X-Forwarded-For instead.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=settings.RATE_LIMIT_DEFAULT,
    enabled=settings.RATE_LIMIT_ENABLED,
)
