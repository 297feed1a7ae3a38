from __future__ import annotations

import base64
import hashlib
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from keyward.logging import get_logger

logger = get_logger(__name__)


class SecretDecryptError(RuntimeError):
    """Stored ciphertext could not be authenticated with the active key."""


class SecretCipher(Protocol):
    """Reversible secret-at-rest protection for TOTP seeds."""

    version: int

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, blob: str) -> str: ...


class FernetSecretCipher:
    """Authenticated encryption (AES-CBC + HMAC) keyed from configured material."""

    version = 1

    def __init__(self, key_material: Optional[str] = None) -> None:
        if key_material:
            self._fernet = Fernet(self._derive_cipher_key(key_material))
        else:
            logger.warning("secret_cipher_ephemeral_key")
            self._fernet = Fernet(Fernet.generate_key())

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("refusing to encrypt an empty secret")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, blob: str) -> str:
        try:
            return self._fernet.decrypt(blob.encode()).decode()
        except InvalidToken as exc:
            logger.warning("secret_decrypt_failed", cipher_version=self.version)
            raise SecretDecryptError("stored secret failed authentication") from exc
