"""Fernet encryption for OAuth tokens at rest.

The key is derived once per process from SECRET_KEY via PBKDF2.
"""

import base64
import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import Text, TypeDecorator

logger = logging.getLogger(__name__)

# Part of the key: changing it makes every stored token unreadable.
_KDF_SALT = b"oneclicktag-token-encryption-v1"
_KDF_ITERATIONS = 480_000


class TokenDecryptionError(Exception):
    """A stored token could not be decrypted with the current SECRET_KEY."""


def derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


@lru_cache(maxsize=1)
def get_cipher() -> Fernet:
    """Return the process-wide Fernet instance keyed from SECRET_KEY."""
    from ..config import get_settings

    return Fernet(derive_key(get_settings().secret_key))


def encrypt_token(plaintext: str) -> str:
    return get_cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_token(ciphertext: str) -> str:
    """Decrypt a stored token.

    Raises:
        TokenDecryptionError: if the value was written under another key.
    """
    try:
        return get_cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise TokenDecryptionError("Stored token cannot be decrypted") from exc


class EncryptedText(TypeDecorator):
    """Text column encrypted on write and decrypted on read."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return encrypt_token(value)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return decrypt_token(value)
