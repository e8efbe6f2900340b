"""Server configuration settings."""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """HTTP server and logging settings."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_POOL_SERVER__",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = Field(default="127.0.0.1", description="Server host address")

    port: int = Field(default=8787, ge=1, le=65535, description="Server port number")

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: Literal["console", "json"] = Field(
        default="console",
        description="Log renderer: console for development, json for production",
    )

    log_file: str | None = Field(
        default=None,
        description="Optional file that receives JSON log lines",
    )

    public_base_url: str | None = Field(
        default=None,
        description="Externally visible base URL used to build OAuth redirect URIs",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level
