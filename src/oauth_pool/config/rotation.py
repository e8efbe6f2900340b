"""Account rotation and token refresh settings."""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RotationSettings(BaseSettings):
    """Failover policy for execution callers."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_POOL_ROTATION__",
        case_sensitive=False,
        extra="ignore",
    )

    auto_swap: bool = Field(
        default=True,
        description="Skip accounts that recently failed when selecting for execution",
    )

    cooldown_seconds: int = Field(
        default=300,
        ge=0,
        description="How long a reported failure keeps an account out of selection",
    )

    allow_file_detected_execution: bool = Field(
        default=False,
        description="Let accounts imported from local CLI credential files run agents",
    )

    default_priority: int = Field(
        default=100,
        ge=1,
        description="Priority assigned to newly authorized accounts",
    )


class RefreshSettings(BaseSettings):
    """Background token renewal settings."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_POOL_REFRESH__",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = Field(default=True, description="Run the periodic refresh job")

    check_interval_seconds: int = Field(
        default=60,
        ge=5,
        description="Interval between refresh cycles",
    )

    renewal_window_seconds: int = Field(
        default=600,
        ge=0,
        description="Refresh tokens expiring within this many seconds",
    )

    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per refresh when the upstream is unreachable",
    )

    retry_min_wait: float = Field(default=1.0, ge=0, description="Minimum backoff")

    retry_max_wait: float = Field(default=10.0, ge=0, description="Maximum backoff")

    @model_validator(mode="after")
    def validate_backoff(self) -> "RefreshSettings":
        if self.retry_max_wait < self.retry_min_wait:
            raise ValueError("retry_max_wait must be >= retry_min_wait")
        return self
