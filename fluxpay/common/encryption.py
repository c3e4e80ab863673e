"""AES-256-GCM helpers for secrets stored at rest (API key and webhook secrets).

Stored format: base64(12-byte nonce || ciphertext || 16-byte tag).
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fluxpay.common.config import settings


class DecryptionError(ValueError):
    """Raised when a stored secret cannot be decrypted with the active key."""


class EncryptionService:
    """Symmetric encrypt/decrypt of short secrets."""

    NONCE_SIZE = 12

    def __init__(self, key_b64: str | None = None) -> None:
        raw_key = key_b64 if key_b64 is not None else settings.encryption_key
        try:
            key = base64.b64decode(raw_key, validate=True)
        except (ValueError, binascii.Error) as exc:
            raise ValueError("encryption key must be base64") from exc
        if len(key) != 32:
            raise ValueError("encryption key must decode to 32 bytes")
        self._aead = AESGCM(key)

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(self.NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (ValueError, binascii.Error) as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        if len(blob) <= self.NONCE_SIZE:
            raise DecryptionError("ciphertext too short")
        try:
            plaintext = self._aead.decrypt(blob[: self.NONCE_SIZE], blob[self.NONCE_SIZE :], None)
        except InvalidTag as exc:
            raise DecryptionError("ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")
