from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str
    SECURITY_LOG_DIR: str = "logs"

    # Per-IP rate limiting
    LOGIN_RATE_LIMIT_ATTEMPTS: int = 15
    LOGIN_RATE_LIMIT_WINDOW: int = 300
    JOIN_RATE_LIMIT_ATTEMPTS: int = 20
    JOIN_RATE_LIMIT_WINDOW: int = 300

    # Per-account lockout
    LOCKOUT_MAX_ATTEMPTS: int = 5
    LOCKOUT_DURATION_MINUTES: int = 10
    LOCKOUT_ESCALATION_FACTOR: float = 2.0
    LOCKOUT_MAX_DURATION_MINUTES: int = 1440

    # Minimum latency of an invalid-credentials response
    FAILED_LOGIN_DELAY_MS: int = 200

    # Sessions
    SESSION_IDLE_TIMEOUT: int = 1800
    SESSION_ABSOLUTE_TIMEOUT: int = 43200
    SESSION_COOKIE_NAME: str = "anonchat_session"
    SESSION_COOKIE_SECURE: bool = True
    TRUST_FORWARDED_FOR: bool = False

    # Chat
    TYPING_FRESHNESS_SECONDS: int = 3
    MAX_MESSAGE_LENGTH: int = 5000
    MAX_REPORT_LENGTH: int = 10000
    DELETED_MESSAGES_LIMIT: int = 200
    CONVERSATION_TTL_HOURS: int = 24
    CONVERSATION_CODE_LENGTH: int = 8

    ADMIN_REDIRECT: str = "/admin/panel"
    PARTICIPANT_REDIRECT: str = "/chat"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
