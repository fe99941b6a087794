"""Client configuration.

Settings are resolved in this order:
1. Pydantic model defaults (in code)
2. COURIER_* environment variables
3. Keyword overrides passed to ``Settings(...)`` / ``Client(...)``
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseSettings):
    """Instance-wide defaults for the request orchestrator."""

    model_config = SettingsConfigDict(
        env_prefix="COURIER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Request defaults
    BASE_URL: str = ""
    TIMEOUT_S: float = Field(default=30.0, gt=0)
    DEFAULT_HEADERS: dict[str, str] = Field(
        default_factory=lambda: {"Content-Type": "application/json"}
    )
    DEFAULT_PRIORITY: int = 5
    REFRESH_PRIORITY: int = 1

    # Cache
    MAX_CACHE_SIZE: int = Field(default=100, ge=1)
    CACHE_TTL_S: float = Field(default=300.0, gt=0)
    DEDUPE_INFLIGHT: bool = True

    # Retry
    RETRY_TIMES: int = Field(default=3, ge=0)
    RETRY_DELAY_S: float = Field(default=1.0, ge=0)

    # Admission control
    ENABLE_QUEUE: bool = True
    MAX_CONCURRENT: int = Field(default=10, ge=1)
    ENABLE_OFFLINE_QUEUE: bool = True

    # Batching
    BATCH_INTERVAL_S: float = Field(default=0.05, ge=0)
    BATCH_MAX_SIZE: int = Field(default=5, ge=1)
    BATCH_URL: str = "/batch"
    BATCH_REQUESTS_FIELD: str = "requests"
    BATCH_RESPONSE_PATH: str | None = None

    # Preload
    PRELOAD_TTL_S: float = Field(default=30.0, gt=0)
    PRELOAD_SWEEP_INTERVAL_S: float = Field(default=60.0, gt=0)

    # Logging; the library only installs handlers when CONFIGURE_LOGGING is set
    CONFIGURE_LOGGING: bool = False
    LOG_LEVEL: LogLevel = "INFO"
    LOG_JSON: bool = False

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings loaded from the environment."""
    return Settings()


settings = get_settings()
