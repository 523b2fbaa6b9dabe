"""
Encryption Layer for stored credentials.

Encrypts the OAuth token file at rest using cryptography.fernet when a
credential key is configured.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Encryption/Decryption failure."""
    pass


class EncryptionLayer:
    """
    Symmetric encryption for small secrets.

    Fernet guarantees confidentiality and integrity (HMAC), so a tampered
    or foreign token file fails to decrypt instead of yielding garbage.
    """

    def __init__(self, key: str):
        """
        Initialize encryption layer.

        Args:
            key: 32-byte URL-safe base64-encoded key
        """
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Invalid encryption key: {e}") from e

    def encrypt(self, data: str) -> str:
        """Encrypt a string, returning a base64 token."""
        if not data:
            return ""
        return self._fernet.encrypt(data.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            EncryptionError: If the token is corrupted or was encrypted with another key
        """
        if not token:
            return ""

        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise EncryptionError("Decryption failed: invalid key or corrupted data") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new valid Fernet key."""
        return Fernet.generate_key().decode("utf-8")
