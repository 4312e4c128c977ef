import html
import re

_SCRIPT_BLOCK = re.compile(r"&lt;script.*?&gt;.*?&lt;/script&gt;", re.DOTALL | re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_EMAIL = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

# (pattern, message) pairs checked in order
_PASSWORD_RULES = (
    (r".{8,}", "Password must be at least 8 characters long"),
    (r"[A-Z]", "Password must contain at least one uppercase letter"),
    (r"[a-z]", "Password must contain at least one lowercase letter"),
    (r"[0-9]", "Password must contain at least one number"),
    (r'[!@#$%^&*(),.?":{}|<>]', "Password must contain at least one special character"),
)


# ==================================================
# Input Sanitization Utilities
# ==================================================
def sanitize_string(value: str) -> str:
    """
    Escape HTML and drop script blocks and null bytes.
    """
    if not isinstance(value, str):
        value = str(value)
    value = _SCRIPT_BLOCK.sub("", html.escape(value))
    return value.replace("\0", "")


def sanitize_training_text(value: str) -> str:
    """
    Text as it goes into a fine-tuning answer: one line, no markup.
    """
    return _WHITESPACE.sub(" ", sanitize_string(value)).strip()


def validate_password_strength(password: str) -> bool:
    """
    Raises ValueError naming the first rule the password breaks.
    """
    for pattern, message in _PASSWORD_RULES:
        if not re.search(pattern, password):
            raise ValueError(message)
    return True


def sanitize_email(email: str) -> str:
    email = sanitize_string(email).strip()
    if not _EMAIL.match(email):
        raise ValueError("Invalid email format")
    return email.lower()
