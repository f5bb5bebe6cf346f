"""At-rest encryption for stored platform tokens.

Security:
- AES-256-GCM encryption, random 96-bit nonce per value
- Ciphertext stored as base64(nonce + ciphertext) with an "enc:" prefix
- Plaintext tokens are never logged
"""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_PREFIX = "enc:"


class TokenCipher:
    """Encrypt/decrypt token strings with a 32-byte key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("token encryption key must be 32 bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: str) -> "TokenCipher":
        """Build from a 64-char hex key (generate with: openssl rand -hex 32).

        Raises:
            ValueError: If the key is not 32 bytes of hex.
        """
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise ValueError("TOKENS_ENCRYPTION_KEY must be hex") from None
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt string with AES-256-GCM.

        Returns:
            "enc:" + base64-encoded nonce + ciphertext.
        """
        nonce = os.urandom(12)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode(), None)
        return _PREFIX + base64.b64encode(nonce + ciphertext).decode()

    def decrypt(self, value: str) -> str:
        """Decrypt a value produced by encrypt().

        Values without the "enc:" prefix were stored before encryption was
        enabled and are returned unchanged.

        Raises:
            ValueError: If the ciphertext was tampered with or the key is wrong.
        """
        if not value.startswith(_PREFIX):
            return value
        data = base64.b64decode(value[len(_PREFIX):])
        nonce = data[:12]
        ciphertext = data[12:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise ValueError("token ciphertext could not be authenticated") from None
        return plaintext.decode()
