"""
Access token encryption at rest.

Platform access tokens are encrypted with Fernet before either store writes
them and decrypted when an Integration is read back, so a leaked database
dump does not leak working credentials.

Generate a key with:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenDecryptionError(Exception):
    """Stored token could not be decrypted with the configured key."""


class TokenCipher:
    """Symmetric encryption for stored access tokens."""

    def __init__(self, key: str) -> None:
        """
        Args:
            key: urlsafe base64 Fernet key.

        Raises:
            ValueError: If the key is not a valid Fernet key.
        """
        try:
            self._fernet = Fernet(key.encode())
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid token encryption key: {e}") from e

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Stored access token failed to decrypt (wrong key?)")
            raise TokenDecryptionError("Stored access token could not be decrypted") from e
