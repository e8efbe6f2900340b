"""At-rest encryption for token material.

The Fernet key is the SHA-256 digest of the configured secret, so any secret
string works and the same secret always yields the same key.
"""

import base64
import hashlib
from typing import Any

import orjson
from cryptography.fernet import Fernet, InvalidToken

from oauth_pool.exceptions import StorageNotReadyError


def derive_key(secret: str) -> bytes:
    """Derive a url-safe base64 Fernet key from an arbitrary secret."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class TokenCipher:
    """Encrypts JSON-serializable payloads with Fernet."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise StorageNotReadyError()
        self._fernet = Fernet(derive_key(secret))

    def encrypt(self, payload: dict[str, Any]) -> str:
        return self._fernet.encrypt(orjson.dumps(payload)).decode("ascii")

    def decrypt(self, token: str) -> dict[str, Any]:
        try:
            plaintext = self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken as e:
            raise StorageNotReadyError(
                "Stored credentials cannot be decrypted with the configured secret"
            ) from e
        data: dict[str, Any] = orjson.loads(plaintext)
        return data


def build_cipher(secret: str | None) -> TokenCipher | None:
    """Return a cipher when a secret is configured, else ``None``."""
    return TokenCipher(secret) if secret else None
