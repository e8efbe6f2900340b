"""Settings configuration for the OAuth credential pool."""

import contextlib
import os
import tomllib
from pathlib import Path
from typing import Any

import orjson
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oauth_pool.config.discovery import find_toml_config_file

from .oauth import FlowSettings, ProviderCredentialSettings
from .rotation import RefreshSettings, RotationSettings
from .server import ServerSettings
from .storage import StorageSettings


__all__ = [
    "Settings",
    "ConfigurationError",
    "get_settings",
    "reset_settings",
]


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _coerce_settings(value: Any, settings_class: type) -> Any:
    """Coerce value to settings class instance.

    Handles: None → default, dict → instance, passthrough existing instances.
    """
    if value is None:
        return settings_class()
    if isinstance(value, settings_class):
        return value
    if isinstance(value, dict):
        return settings_class(**value)
    if hasattr(value, "model_dump"):
        return settings_class(**value.model_dump())
    return value


class Settings(BaseSettings):
    """
    Configuration settings for the OAuth credential pool.

    Settings are loaded from environment variables, .env files, and TOML configuration files.
    Environment variables take precedence over .env file values.
    TOML configuration files are loaded in the following order:
    1. .oauth_pool.toml in current directory
    2. oauth_pool.toml in current directory
    3. config.toml in the user config directory (oauth_pool/)
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_POOL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    server: ServerSettings = Field(
        default_factory=ServerSettings,
        description="Server configuration settings",
    )

    storage: StorageSettings = Field(
        default_factory=StorageSettings,
        description="Credential storage and encryption settings",
    )

    rotation: RotationSettings = Field(
        default_factory=RotationSettings,
        description="Failover policy settings",
    )

    refresh: RefreshSettings = Field(
        default_factory=RefreshSettings,
        description="Background token refresh settings",
    )

    flows: FlowSettings = Field(
        default_factory=FlowSettings,
        description="Authorization attempt settings",
    )

    providers: ProviderCredentialSettings = Field(
        default_factory=ProviderCredentialSettings,
        description="Per-provider OAuth client overrides",
    )

    @field_validator("server", mode="before")
    @classmethod
    def validate_server(cls, v: Any) -> Any:
        return _coerce_settings(v, ServerSettings)

    @field_validator("storage", mode="before")
    @classmethod
    def validate_storage(cls, v: Any) -> Any:
        return _coerce_settings(v, StorageSettings)

    @field_validator("rotation", mode="before")
    @classmethod
    def validate_rotation(cls, v: Any) -> Any:
        return _coerce_settings(v, RotationSettings)

    @field_validator("refresh", mode="before")
    @classmethod
    def validate_refresh(cls, v: Any) -> Any:
        return _coerce_settings(v, RefreshSettings)

    @field_validator("flows", mode="before")
    @classmethod
    def validate_flows(cls, v: Any) -> Any:
        return _coerce_settings(v, FlowSettings)

    @field_validator("providers", mode="before")
    @classmethod
    def validate_providers(cls, v: Any) -> Any:
        return _coerce_settings(v, ProviderCredentialSettings)

    @property
    def server_url(self) -> str:
        """Get the complete server URL."""
        if self.server.public_base_url:
            return self.server.public_base_url.rstrip("/")
        return f"http://{self.server.host}:{self.server.port}"

    def model_dump_safe(self) -> dict[str, Any]:
        """Dump settings with secrets masked."""
        data = self.model_dump()
        if data["storage"].get("encryption_secret"):
            data["storage"]["encryption_secret"] = "***"
        if data["providers"].get("antigravity_client_secret"):
            data["providers"]["antigravity_client_secret"] = "***"
        return data

    @classmethod
    def load_toml_config(cls, toml_path: Path) -> dict[str, Any]:
        """Load configuration from a TOML file.

        Raises:
            ValueError: If the TOML file is invalid or cannot be read
        """
        try:
            with toml_path.open("rb") as f:
                return tomllib.load(f)
        except OSError as e:
            raise ValueError(f"Cannot read TOML config file {toml_path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid TOML syntax in {toml_path}: {e}") from e

    @classmethod
    def from_config(
        cls, config_path: Path | str | None = None, **kwargs: Any
    ) -> "Settings":
        """Create Settings instance from configuration file.

        Args:
            config_path: Path to configuration file. None uses the
                OAUTH_POOL_CONFIG_FILE env var, then auto-discovery.
            **kwargs: Additional keyword arguments to override config values
        """
        if config_path is None:
            config_path_env = os.environ.get("OAUTH_POOL_CONFIG_FILE")
            if config_path_env:
                config_path = Path(config_path_env)

        if isinstance(config_path, str):
            config_path = Path(config_path)

        if config_path is None:
            config_path = find_toml_config_file()

        config_data: dict[str, Any] = {}
        if config_path and config_path.exists():
            if config_path.suffix.lower() != ".toml":
                raise ValueError(
                    f"Unsupported config file format: {config_path.suffix}. "
                    "Only TOML (.toml) files are supported."
                )
            config_data = cls.load_toml_config(config_path)

        # kwargs override file values section by section
        merged: dict[str, Any] = dict(config_data)
        for key, value in kwargs.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value

        return cls(**merged)


_settings: Settings | None = None


def get_settings(config_path: Path | str | None = None) -> Settings:
    """Get the process-wide settings instance.

    CLI overrides are passed to the server process as JSON in
    OAUTH_POOL_CONFIG_OVERRIDES.
    """
    global _settings
    if _settings is not None and config_path is None:
        return _settings

    try:
        cli_overrides: dict[str, Any] = {}
        overrides_json = os.environ.get("OAUTH_POOL_CONFIG_OVERRIDES")
        if overrides_json:
            with contextlib.suppress(ValueError):
                cli_overrides = orjson.loads(overrides_json)

        _settings = Settings.from_config(config_path=config_path, **cli_overrides)
        return _settings
    except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e


def reset_settings() -> None:
    """Drop the cached settings instance (used by tests)."""
    global _settings
    _settings = None
