"""
Authenticated encryption for escrowed recovery fields.

Every escrowed value (name, identity number, birth date, gender, secret) is
sealed with AES-256-GCM under a service key that never touches the record
store. The record's address is bound in as associated data, so a token
copied from one record into another fails authentication.

Token format (base64, URL-safe):
    [nonce (12 bytes)] [ciphertext + auth tag]
"""

from __future__ import annotations

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import CipherError

KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits (standard for GCM)


def generate_key() -> str:
    """A fresh base64-encoded key suitable for AADHAAR_RECOVERY_ENCRYPTION_KEY."""
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


class FieldCipher:
    """Seal and open escrowed field values.

    Example:
        >>> cipher = FieldCipher(generate_key())
        >>> token = cipher.encrypt("JANE DOE", address="jane@example.com")
        >>> cipher.decrypt(token, address="jane@example.com")
        'JANE DOE'
    """

    def __init__(self, key: str | bytes):
        raw = key if isinstance(key, bytes) else self._decode_key(key)
        if len(raw) != KEY_SIZE:
            raise CipherError(
                f"Encryption key must be {KEY_SIZE} bytes, got {len(raw)} bytes"
            )
        self._aead = AESGCM(raw)

    @staticmethod
    def _decode_key(key: str) -> bytes:
        try:
            return base64.urlsafe_b64decode(key.strip().encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError):
            raise CipherError("Encryption key is not valid base64")

    def encrypt(self, plaintext: str, address: str) -> str:
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), address.encode("utf-8"))
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str, address: str) -> str:
        try:
            blob = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError):
            raise CipherError("Escrowed value is not valid base64")
        if len(blob) <= NONCE_SIZE:
            raise CipherError("Escrowed value is truncated")
        try:
            plaintext = self._aead.decrypt(
                blob[:NONCE_SIZE], blob[NONCE_SIZE:], address.encode("utf-8")
            )
        except InvalidTag:
            raise CipherError("Escrowed value failed authentication")
        return plaintext.decode("utf-8")

    def encrypt_optional(self, plaintext: str | None, address: str) -> str | None:
        return None if plaintext is None else self.encrypt(plaintext, address)

    def decrypt_optional(self, token: str | None, address: str) -> str | None:
        return None if token is None else self.decrypt(token, address)
