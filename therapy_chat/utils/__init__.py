# Re-export so "from therapy_chat.utils import utc_now, sanitize_string" works
from therapy_chat.utils.dates import ensure_utc, utc_now
from therapy_chat.utils.sanitization import sanitize_email, sanitize_string

__all__ = [
    "ensure_utc",
    "sanitize_email",
    "sanitize_string",
    "utc_now",
]
