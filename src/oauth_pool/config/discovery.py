import os
from pathlib import Path


def get_xdg_config_home() -> Path:
    """Return ``$XDG_CONFIG_HOME`` or ``~/.config``."""
    env = os.environ.get("XDG_CONFIG_HOME")
    return Path(env) if env else Path.home() / ".config"


def get_oauth_pool_config_dir() -> Path:
    """Get the oauth-pool configuration directory."""
    return get_xdg_config_home() / "oauth_pool"


def find_toml_config_file() -> Path | None:
    """Find the TOML configuration file for oauth_pool.

    Searches in the following order:
    1. .oauth_pool.toml / oauth_pool.toml in current directory
    2. config.toml in the user config directory
    """
    candidates = [
        Path(".oauth_pool.toml").resolve(),
        Path("oauth_pool.toml").resolve(),
        get_oauth_pool_config_dir() / "config.toml",
    ]

    for candidate in candidates:
        if candidate.exists() and candidate.is_file():
            return candidate

    return None
