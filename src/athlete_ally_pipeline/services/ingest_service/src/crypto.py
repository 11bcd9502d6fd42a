"""AES-256-GCM encryption for vendor tokens at rest."""

import base64
import binascii
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16


class DecryptionError(Exception):
    """Ciphertext could not be authenticated or parsed, or the key is unusable."""


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode('ascii'), validate=True)


class TokenCipher:
    """
    Encrypts short strings into ``base64(iv).base64(ciphertext).base64(tag)``.

    A fresh random IV is drawn for every call to encrypt.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
            raise DecryptionError(f"Encryption key must be {KEY_BYTES} bytes")
        self._aead = AESGCM(bytes(key))

    @classmethod
    def from_base64(cls, value: str) -> "TokenCipher":
        """Build a cipher from a base64 key such as TOKEN_ENCRYPTION_KEY."""
        if not value:
            raise DecryptionError("Encryption key is not configured")
        try:
            key = _b64decode(value.strip())
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Encryption key is not valid base64") from e
        return cls(key)

    def __repr__(self) -> str:
        return "TokenCipher(key=<redacted>)"

    def encrypt(self, plaintext: Union[str, bytes]) -> str:
        data = plaintext.encode('utf-8') if isinstance(plaintext, str) else plaintext
        iv = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(iv, data, None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return '.'.join((_b64encode(iv), _b64encode(ciphertext), _b64encode(tag)))

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a blob produced by encrypt.

        Raises:
            DecryptionError: Malformed blob, bad base64 or failed authentication
        """
        if not isinstance(blob, str):
            raise DecryptionError("Ciphertext must be a string")

        parts = blob.split('.')
        if len(parts) != 3:
            raise DecryptionError("Ciphertext must have three dot-separated parts")

        try:
            iv, ciphertext, tag = (_b64decode(part) for part in parts)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e

        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Ciphertext has an invalid IV or tag length")

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Ciphertext failed authentication") from e

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted token is not UTF-8") from e
