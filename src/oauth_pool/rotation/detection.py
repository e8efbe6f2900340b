"""Local CLI credential files as non-authoritative hints.

The GitHub Copilot editor plugins keep their token in
``~/.config/github-copilot/{hosts,apps}.json``; the Gemini CLI keeps its
Google tokens in ``~/.gemini/oauth_creds.json``. Finding one sets the
provider's ``detected`` flag and allows importing it as a ``file-detected``
account.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jwt
import orjson
from structlog import get_logger

from oauth_pool.providers import ProviderSpec


logger = get_logger(__name__)


@dataclass
class DetectedCredential:
    provider: str
    path: Path
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None  # epoch ms
    scope: str | None = None
    email: str | None = None
    user: str | None = None


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        data = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _jwt_email(id_token: str | None) -> str | None:
    """Read the email claim of an unverified JWT, for display only."""
    if not id_token:
        return None
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    email = claims.get("email")
    return email if isinstance(email, str) else None


def _parse_copilot(provider: str, path: Path, data: dict[str, Any]) -> DetectedCredential | None:
    # {"github.com": {"user": ..., "oauth_token": ...}} or
    # {"github.com:<client id>": {"user": ..., "oauth_token": ...}}
    for host, entry in data.items():
        if not host.startswith("github.com") or not isinstance(entry, dict):
            continue
        token = entry.get("oauth_token")
        if isinstance(token, str) and token:
            user = entry.get("user")
            return DetectedCredential(
                provider=provider,
                path=path,
                access_token=token,
                user=user if isinstance(user, str) else None,
            )
    return None


def _parse_google(provider: str, path: Path, data: dict[str, Any]) -> DetectedCredential | None:
    token = data.get("access_token")
    if not isinstance(token, str) or not token:
        return None
    expiry = data.get("expiry_date")
    return DetectedCredential(
        provider=provider,
        path=path,
        access_token=token,
        refresh_token=data.get("refresh_token") or None,
        expires_at=int(expiry) if isinstance(expiry, int | float) else None,
        scope=data.get("scope"),
        email=_jwt_email(data.get("id_token")),
    )


def load_detected(spec: ProviderSpec, home: Path | None = None) -> DetectedCredential | None:
    """Parse the first usable credential file for ``spec``."""
    if not spec.supports_file_detection:
        return None
    for path in spec.detection_files(home):
        if not path.is_file():
            continue
        data = _read_json(path)
        if data is None:
            logger.debug("detection_file_unreadable", provider=spec.id, path=str(path))
            continue
        if "access_token" in data:
            found = _parse_google(spec.id, path, data)
        else:
            found = _parse_copilot(spec.id, path, data)
        if found is not None:
            return found
    return None


def is_detected(spec: ProviderSpec, home: Path | None = None) -> bool:
    """Whether a local CLI credential exists for ``spec``. Never touches the network."""
    return load_detected(spec, home) is not None
