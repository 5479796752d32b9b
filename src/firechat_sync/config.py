"""Application configuration using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Optional

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ``FIRECHAT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FIRECHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store backend: "memory" or "firestore"
    store_backend: str = "memory"
    firestore_project: Optional[str] = None
    firestore_database: Optional[str] = None

    # Remote call boundary
    remote_timeout_seconds: float = 10.0
    write_retry_attempts: int = 3
    retry_backoff_min: float = 0.1
    retry_backoff_max: float = 2.0

    # Query windows
    default_message_limit: int = 50
    conversation_search_limit: int = 10
    recent_conversation_limit: int = 5

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def uses_firestore(self) -> bool:
        return self.store_backend.lower() == "firestore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog processors and the minimum log level."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
