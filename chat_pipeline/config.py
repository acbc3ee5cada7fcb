from functools import lru_cache
from typing import Optional

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

    # Message Store
    DATABASE_URL: str = "sqlite:///./chat.db"

    LOG_LEVEL: str = "INFO"

    # Real-time fan-out broker. Unset means fan-out is disabled.
    REDIS_URL: Optional[str] = None

    # Event Log (Redis Streams). Unset means chat ingestion runs degraded.
    EVENT_LOG_URL: Optional[str] = None
    EVENT_LOG_PARTITIONS: int = 3
    EVENT_LOG_MAXLEN: int = 100_000
    EVENT_LOG_BLOCK_MS: int = 1000

    TOPIC_CHAT_MESSAGES: str = "chat-messages"
    TOPIC_MESSAGE_PERSISTENCE: str = "message-persistence"

    # Batch consumer
    CONSUMER_BATCH_SIZE: int = 50
    CONSUMER_FLUSH_INTERVAL_MS: int = 2000
    CONSUMER_DRAIN_TIMEOUT_SECONDS: float = 10.0
    CONSUMER_READ_RETRIES: int = 5
    CONSUMER_RETRY_BACKOFF_MS: int = 500

    # Retention
    MESSAGE_RETENTION_DAYS: int = 90
    RETENTION_SWEEP_INTERVAL_SECONDS: float = 3600.0

    # Offline catch-up
    CATCHUP_LIMIT: int = 100


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()
