"""Credential storage settings."""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_database_path() -> Path:
    return Path.home() / ".oauth-pool" / "credentials.db"


class StorageSettings(BaseSettings):
    """Where credentials live and how they are encrypted."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_POOL_STORAGE__",
        case_sensitive=False,
        extra="ignore",
    )

    database_path: Path = Field(
        default_factory=_default_database_path,
        description="SQLite database file holding the credential records",
    )

    # Falls back to OAUTH_ENCRYPTION_SECRET, then SESSION_SECRET
    encryption_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "encryption_secret",
            "OAUTH_POOL_ENCRYPTION_SECRET",
            "OAUTH_ENCRYPTION_SECRET",
            "SESSION_SECRET",
        ),
        description="Secret the at-rest encryption key is derived from",
    )

    @property
    def storage_ready(self) -> bool:
        return bool(self.encryption_secret)
