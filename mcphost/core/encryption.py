"""Encryption at rest for stored provider secrets.

A SecretEncryption wraps one Fernet key (taken from
``Settings.encryption_key``) and turns individual secret strings into
opaque tokens that are safe to write to the secrets directory.

SECURITY NOTES:
- Fernet is AES-128-CBC with an HMAC-SHA256 tag; tampered files fail to decrypt
- Decrypted values must never reach the logs; use mask_secret_value
"""

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger()

MASK_CHAR = "*"
MAX_MASK_LENGTH = 8


class EncryptionError(Exception):
    """Base exception for encryption operations."""

    pass


class EncryptionKeyError(EncryptionError):
    """Configured key is not a valid Fernet key."""

    pass


class DecryptionError(EncryptionError):
    """Stored token could not be decrypted with the configured key."""

    pass


class SecretEncryption:
    """Encrypts and decrypts single secret values.

    Holds no mutable state, so one instance is shared by every reader and
    writer of the secrets store.

    Example usage:
        encryption = SecretEncryption(settings.encryption_key.get_secret_value())
        token = encryption.encrypt("ghp_...")
        assert encryption.decrypt(token) == "ghp_..."
    """

    def __init__(self, key: str | bytes) -> None:
        """Initialize with a Fernet key.

        Args:
            key: url-safe base64 encoding of 32 random bytes

        Raises:
            EncryptionKeyError: If key is not a valid Fernet key
        """
        raw = key.encode("ascii") if isinstance(key, str) else key
        try:
            self._fernet = Fernet(raw)
        except (ValueError, TypeError) as e:
            logger.error("encryption_key_invalid", error_type=type(e).__name__)
            raise EncryptionKeyError(
                "MCPHOST_ENCRYPTION_KEY is not a valid Fernet key "
                "(expected 32 url-safe base64-encoded bytes)"
            ) from e

    def encrypt(self, value: str) -> str:
        """Encrypt a secret value into a url-safe token."""
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by encrypt.

        Raises:
            DecryptionError: If the token was made with another key or is corrupted
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            logger.warning("secret_decryption_rejected", error_type=type(e).__name__)
            raise DecryptionError("Secret token is invalid for the configured key") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a key suitable for MCPHOST_ENCRYPTION_KEY."""
        return Fernet.generate_key().decode("ascii")


def mask_secret_value(value: str, visible_chars: int = 4) -> str:
    """Mask a secret for logging.

    Keeps a short prefix so tokens can still be told apart
    (``"sk-abcdefghijklmnop"`` becomes ``"sk-a********"``). Values no
    longer than the prefix are masked completely.
    """
    if len(value) <= visible_chars:
        return MASK_CHAR * len(value)
    hidden = min(MAX_MASK_LENGTH, len(value) - visible_chars)
    return value[:visible_chars] + MASK_CHAR * hidden
