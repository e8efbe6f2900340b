"""Authorization flow and provider client settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlowSettings(BaseSettings):
    """Limits for in-flight authorization attempts and upstream calls."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_POOL_FLOWS__",
        case_sensitive=False,
        extra="ignore",
    )

    http_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        le=120,
        description="Timeout for every call to a provider endpoint",
    )

    redirect_state_ttl_seconds: int = Field(
        default=600,
        ge=60,
        description="Lifetime of a web-redirect attempt waiting for its callback",
    )

    max_pending_attempts: int = Field(
        default=1000,
        ge=1,
        description="Upper bound on attempts held in memory",
    )


class ProviderCredentialSettings(BaseSettings):
    """OAuth client registrations that override the built-in ones."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_POOL_PROVIDERS__",
        case_sensitive=False,
        extra="ignore",
    )

    github_copilot_client_id: str | None = Field(
        default=None,
        description="GitHub OAuth app client id for the device flow",
    )

    antigravity_client_id: str | None = Field(
        default=None,
        description="Google OAuth client id for the antigravity redirect flow",
    )

    antigravity_client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret for the antigravity redirect flow",
    )
