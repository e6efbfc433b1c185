"""AES-256-GCM encryption for sensitive configuration data."""

from __future__ import annotations

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
NONCE_SIZE = 12


class EncryptionError(ValueError):
    """Raised when a key is invalid or data cannot be encrypted or decrypted."""


class EncryptionService:
    """Encrypts and decrypts data with AES-256-GCM, nonce prepended to the ciphertext."""

    def __init__(self, key: bytes) -> None:
        key = bytes(key)
        if len(key) != KEY_SIZE:
            raise EncryptionError(
                f"encryption key must be {KEY_SIZE} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, key_b64: str) -> EncryptionService:
        """Create a service from a standard base64-encoded key."""
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EncryptionError(f"failed to decode base64 key: {exc}") from exc
        return cls(key)

    def encrypt(self, plaintext: bytes) -> bytes:
        """Return a fresh random nonce followed by the sealed plaintext."""
        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, bytes(plaintext), None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        """Open data produced by :meth:`encrypt`."""
        ciphertext = bytes(ciphertext)
        if len(ciphertext) < NONCE_SIZE:
            raise EncryptionError("ciphertext too short")
        nonce, sealed = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise EncryptionError("failed to decrypt: authentication failed") from exc


def generate_key() -> bytes:
    """Return a new random 32-byte key."""
    return secrets.token_bytes(KEY_SIZE)


def generate_key_base64() -> str:
    """Return a new random 32-byte key, base64-encoded."""
    return base64.b64encode(generate_key()).decode("ascii")