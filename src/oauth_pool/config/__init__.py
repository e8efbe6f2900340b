"""Configuration module for the OAuth credential pool."""

from .oauth import FlowSettings, ProviderCredentialSettings
from .rotation import RefreshSettings, RotationSettings
from .server import ServerSettings
from .settings import ConfigurationError, Settings, get_settings, reset_settings
from .storage import StorageSettings


__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "ConfigurationError",
    "ServerSettings",
    "StorageSettings",
    "RotationSettings",
    "RefreshSettings",
    "FlowSettings",
    "ProviderCredentialSettings",
]
