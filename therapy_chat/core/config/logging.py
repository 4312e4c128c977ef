import logging
import sys
from typing import Any

import structlog

from therapy_chat.core.config.settings import Environment, settings


# ==================================================
# Structured Logging Setup
# ==================================================
def _configure_logging() -> None:
    """
    Routes structlog through the stdlib logging module so that third-party
    libraries (uvicorn, sqlalchemy, tenacity) end up in the same stream.
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    use_json = settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == Environment.PRODUCTION
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            # Pulls in anything registered via bind_context()
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


_configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach fields to every log line emitted by the current request/task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


logger = get_logger("therapy_chat")
