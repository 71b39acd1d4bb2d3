from datetime import timedelta
from functools import cached_property, lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from smsrelay.errors import ConfigError
from smsrelay.retry import parse_schedule


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    The retry schedule is parsed once here, so a bad RETRY_SCHEDULE
    fails at startup instead of on the first retry.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./smsrelay.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Inbound webhook signature; verification is skipped when unset
    WEBHOOK_SECRET: Optional[str] = None

    # Downstream chat gateway
    BRIDGE_BASE_URL: str = "https://wa.woosh.ai"
    BRIDGE_API_KEY: str = ""
    BRIDGE_TIMEOUT_SECONDS: float = Field(10.0, gt=0)
    BRIDGE_SERVICE_NAME: str = "wa_bridge"

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = Field(4, ge=1)
    RETRY_SCHEDULE: str = "1s,4s,15s,60s"
    RETRY_JITTER_MS: int = Field(200, ge=0)

    # Circuit breaker
    BREAKER_FAIL_THRESHOLD: int = Field(8, ge=1)
    BREAKER_HALF_OPEN_AFTER: int = Field(60, ge=0)
    BREAKER_SUCCESS_THRESHOLD: int = Field(3, ge=1)

    # Dead-letter audit events
    DLQ_ENABLED: bool = True

    # Worker loop
    WORKER_POLL_INTERVAL: float = Field(1.0, gt=0)
    WORKER_BUSY_POLL_INTERVAL: float = Field(0.1, ge=0)
    CLAIM_LEASE_SECONDS: Optional[float] = None

    @field_validator("RETRY_SCHEDULE")
    @classmethod
    def validate_retry_schedule(cls, v: str) -> str:
        """Reject a malformed or decreasing schedule at load time."""
        try:
            parse_schedule(v)
        except ConfigError as exc:
            raise ValueError(str(exc)) from exc
        return v

    @cached_property
    def retry_schedule(self) -> tuple[timedelta, ...]:
        """RETRY_SCHEDULE as an ordered tuple of delays."""
        return parse_schedule(self.RETRY_SCHEDULE)

    @property
    def claim_lease(self) -> timedelta:
        """How long a claimed row stays invisible to other workers."""
        if self.CLAIM_LEASE_SECONDS is not None:
            return timedelta(seconds=self.CLAIM_LEASE_SECONDS)
        return timedelta(seconds=self.BRIDGE_TIMEOUT_SECONDS + 5)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
