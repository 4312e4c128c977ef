from enum import Enum
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ==================================================
# Environment
# ==================================================
class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


# ==================================================
# Application Settings
# ==================================================
class Settings(BaseSettings):
    """
    Strongly typed configuration loaded from the environment (or a `.env` file).
    Every module reads configuration from the `settings` singleton below.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Project ---
    PROJECT_NAME: str = "Therapy Chat"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Environment = Environment.DEVELOPMENT
    ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    SITE_URL: str = "http://localhost:3000"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # "console" or "json"

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./therapy_chat.db"
    DB_ECHO: bool = False

    # --- Auth ---
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    # Shared secret for the scheduled / triggered backend functions
    SERVICE_ROLE_KEY: str = "service-role-key"

    # --- LLM ---
    OPENAI_API_KEY: str = ""
    DEFAULT_LLM_MODEL: str = "gpt-4o-mini"
    SUMMARY_LLM_MODEL: str = "gpt-4o-mini"
    TAGGING_LLM_MODEL: str = "gpt-4o-mini"
    DEFAULT_LLM_TEMPERATURE: float = 0.4
    MAX_TOKENS: int = 2000
    MAX_LLM_CALL_RETRIES: int = 3
    CONTEXT_MESSAGE_COUNT: int = 6
    SUMMARY_MESSAGE_COUNT: int = 20

    # --- Fine-tuning ---
    FINE_TUNE_BASE_MODEL: str = "gpt-4o-mini-2024-07-18"
    FINE_TUNE_POLL_INTERVAL_SECONDS: float = 300.0
    FINE_TUNE_MAX_POLL_ATTEMPTS: int = 10
    FINE_TUNE_KICKOFF_ATTEMPTS: int = 1
    MIN_TRAINING_EXAMPLES: int = 10
    SNAPSHOT_RETRY_LIMIT: int = 3
    EXPORT_LOCK_TTL_MINUTES: int = 10
    EXPORT_COOLDOWN_MINUTES: int = 5

    # --- Email (SendGrid) ---
    SENDGRID_API_KEY: str = ""
    SENDGRID_API_URL: str = "https://api.sendgrid.com/v3/mail/send"
    SENDER_EMAIL: str = "no-reply@therapy-chat.local"
    SENDER_NAME: str = "Therapy Chat"

    # --- Invites ---
    INVITE_RETRY_LIMIT: int = 3
    INVITE_EXPIRY_DAYS: int = 7
    INVITES_PER_HOUR: int = 10

    # --- Realtime / Analytics ---
    PRESENCE_DEBOUNCE_SECONDS: float = 0.1
    HIGH_RISK_INTENSITY: float = 0.8

    # --- Rate limiting ---
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: List[str] = Field(default_factory=lambda: ["200 per day", "50 per hour"])
    RATE_LIMIT_ENDPOINTS: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            "root": ["10 per minute"],
            "health": ["20 per minute"],
            "register": ["10 per hour"],
            "login": ["20 per minute"],
            "chat": ["30 per minute"],
            "summarize": ["20 per minute"],
            "tag_emotion": ["60 per minute"],
            "invite": ["20 per hour"],
            "export": ["10 per minute"],
        }
    )


settings = Settings()
