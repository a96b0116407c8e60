"""
Runtime configuration for the reconciliation engine.

Every timing constant (timeouts, retry backoff, cache TTLs, suppression and
pending-read windows, read-confirmation polling) is read from the environment
or a `.env` file in the project root.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]

ENV_PATH = BASE_DIR / ".env"

# Platform-provided variables win over .env defaults
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    mongo_url: str = Field(default="mongodb://localhost:27017", alias="MONGO_URL")
    mongo_db_name: str = Field(default="social_sync", alias="MONGO_DB_NAME")
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    current_user_id: Optional[str] = Field(default=None, alias="CURRENT_USER_ID")
    enable_change_streams: bool = Field(default=False, alias="ENABLE_CHANGE_STREAMS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Per-call timeouts (seconds), by call weight
    request_timeout: float = Field(default=15.0, alias="REQUEST_TIMEOUT")
    heavy_request_timeout: float = Field(default=20.0, alias="HEAVY_REQUEST_TIMEOUT")
    light_request_timeout: float = Field(default=10.0, alias="LIGHT_REQUEST_TIMEOUT")

    # Exponential backoff
    retry_max_retries: int = Field(default=3, alias="RETRY_MAX_RETRIES")
    retry_initial_delay: float = Field(default=1.0, alias="RETRY_INITIAL_DELAY")
    retry_max_delay: float = Field(default=10.0, alias="RETRY_MAX_DELAY")
    retry_factor: float = Field(default=2.0, alias="RETRY_FACTOR")

    # Result cache TTLs (seconds)
    count_cache_ttl: float = Field(default=30.0, alias="COUNT_CACHE_TTL")
    messages_cache_ttl: float = Field(default=120.0, alias="MESSAGES_CACHE_TTL")
    conversations_cache_ttl: float = Field(default=60.0, alias="CONVERSATIONS_CACHE_TTL")
    unread_cache_ttl: float = Field(default=30.0, alias="UNREAD_CACHE_TTL")

    # Anti-flicker windows (seconds)
    suppression_window: float = Field(default=5.0, alias="SUPPRESSION_WINDOW")
    pending_read_ttl: float = Field(default=5.0, alias="PENDING_READ_TTL")

    # Read confirmation polling
    read_poll_timeout: float = Field(default=3.0, alias="READ_POLL_TIMEOUT")
    read_poll_interval: float = Field(default=0.25, alias="READ_POLL_INTERVAL")
    read_poll_max_attempts: int = Field(default=12, alias="READ_POLL_MAX_ATTEMPTS")

    max_message_length: int = Field(default=2000, alias="MAX_MESSAGE_LENGTH")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
