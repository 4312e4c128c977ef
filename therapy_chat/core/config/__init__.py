# Re-export so "from therapy_chat.core.config import settings" gets the instance
from therapy_chat.core.config.settings import Environment, settings

__all__ = ["Environment", "settings"]
