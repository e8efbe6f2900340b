"""Tests for at-rest token encryption."""

import pytest

from oauth_pool.db.crypto import TokenCipher, build_cipher, derive_key
from oauth_pool.exceptions import StorageNotReadyError


@pytest.mark.unit
def test_derive_key_is_stable():
    assert derive_key("secret") == derive_key("secret")
    assert derive_key("secret") != derive_key("other")


@pytest.mark.unit
def test_ciphertext_does_not_contain_token():
    cipher = TokenCipher("secret")
    token = cipher.encrypt({"access_token": "gho_plaintext"})
    assert "gho_plaintext" not in token
    assert cipher.decrypt(token) == {"access_token": "gho_plaintext"}


@pytest.mark.unit
def test_wrong_secret_cannot_decrypt():
    token = TokenCipher("secret").encrypt({"access_token": "x"})
    with pytest.raises(StorageNotReadyError):
        TokenCipher("different").decrypt(token)


@pytest.mark.unit
def test_build_cipher_without_secret():
    assert build_cipher(None) is None
    assert build_cipher("") is None
    assert isinstance(build_cipher("s"), TokenCipher)
