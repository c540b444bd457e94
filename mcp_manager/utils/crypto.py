"""Symmetric encryption helpers for secrets stored at rest.

AES-256-CBC with a key derived as SHA-256 of the configured master secret.
Ciphertexts are stored as ``"<iv hex>:<base64 ciphertext>"``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher
from cryptography.hazmat.primitives.ciphers import algorithms
from cryptography.hazmat.primitives.ciphers import modes

from mcp_manager.config import get_settings
from mcp_manager.exceptions import DecryptionError
from mcp_manager.exceptions import EncryptionConfigError

logger = logging.getLogger(__name__)

IV_LENGTH = 16


class Encryptor:
    """Encrypt/decrypt text with a key derived once from *secret*."""

    def __init__(self, secret: str | None):
        if not secret:
            raise EncryptionConfigError("secret")
        self._key = hashlib.sha256(secret.encode("utf-8")).digest()

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{base64.b64encode(ciphertext).decode('ascii')}"

    def decrypt(self, token: str) -> str:
        """Return the plaintext for *token*; any failure is a generic :class:`DecryptionError`."""
        if not isinstance(token, str):
            raise DecryptionError()

        parts = token.split(":")
        if len(parts) != 2:
            raise DecryptionError()

        try:
            iv = bytes.fromhex(parts[0])
            ciphertext = base64.b64decode(parts[1], validate=True)
        except (ValueError, binascii.Error):
            raise DecryptionError() from None

        if len(iv) != IV_LENGTH or not ciphertext:
            raise DecryptionError()

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError:
            # Wrong key, truncated block or bad padding. UnicodeDecodeError is a ValueError too.
            raise DecryptionError() from None


# ---------------------------------------------------------------------------
# Process-wide helpers
# ---------------------------------------------------------------------------

_encryptor: Encryptor | None = None
_encryptor_secret: str | None = None


def _get_encryptor() -> Encryptor:
    global _encryptor, _encryptor_secret

    secret = get_settings().encryption_secret
    if _encryptor is None or secret != _encryptor_secret:
        _encryptor = Encryptor(secret)
        _encryptor_secret = secret
    return _encryptor


def encrypt(plaintext: str) -> str:
    """Encrypt *plaintext* with the configured master secret."""
    return _get_encryptor().encrypt(plaintext)


def decrypt(token: str) -> str:
    """Decrypt a value produced by :func:`encrypt`."""
    return _get_encryptor().decrypt(token)
