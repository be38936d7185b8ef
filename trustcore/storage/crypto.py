from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from trustcore.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Symmetric encryption for secrets that must be recoverable at rest.

    TOTP seeds and webhook signing secrets are needed in plaintext to compute
    codes and signatures, so they are encrypted rather than hashed.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret encryption key unavailable")
        try:
            self._fernet = Fernet(self._derive_cipher_key(key_material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str | None) -> str | None:
        if not ciphertext:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            logger.error("secret_decrypt_failed")
            raise RuntimeError("stored secret could not be decrypted") from exc
