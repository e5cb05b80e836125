"""
Credential encryption for integration tokens.

The token manager depends only on the ``CredentialCipher`` protocol; the
Fernet implementation here is what the app wires in by default.
"""

from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""


class CredentialCipher(Protocol):
    def encrypt(self, plaintext: str) -> bytes: ...

    def decrypt(self, ciphertext: bytes) -> str: ...


def _get_fernet(key: str | None = None) -> Fernet:
    """
    Build a Fernet instance from ``key`` or ``settings.ENCRYPTION_KEY``.

    Raises:
        EncryptionError: If no key is configured or the key is malformed
    """
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(key.encode("utf-8"))
    except (TypeError, ValueError) as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


class FernetCredentialCipher:
    """Fernet-backed CredentialCipher."""

    def __init__(self, key: str | None = None):
        self._fernet = _get_fernet(key)

    def encrypt(self, plaintext: str) -> bytes:
        if not plaintext or not isinstance(plaintext, str):
            raise EncryptionError("Token must be a non-empty string")
        return self._fernet.encrypt(plaintext.encode("utf-8"))

    def decrypt(self, ciphertext: bytes) -> str:
        if not ciphertext or not isinstance(ciphertext, bytes | bytearray | memoryview):
            raise EncryptionError("Encrypted token must be non-empty bytes")
        try:
            return self._fernet.decrypt(bytes(ciphertext)).decode("utf-8")
        except InvalidToken as e:
            logger.error("Token decryption failed - invalid token", ciphertext_length=len(ciphertext))
            raise EncryptionError("Invalid or corrupted token") from e


def validate_encryption_config() -> bool:
    """
    Round-trip a sample value to confirm encryption is usable.

    Returns:
        bool: True if encryption is configured and working
    """
    try:
        cipher = FernetCredentialCipher()
        sample = "encryption-check"
        is_valid = cipher.decrypt(cipher.encrypt(sample)) == sample
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False

    if is_valid:
        logger.debug("Encryption configuration validated successfully")
    else:
        logger.error("Encryption validation failed - data mismatch")
    return is_valid


def generate_new_key() -> str:
    """
    Generate a new Fernet encryption key.

    Use this for initial setup or key rotation and store the result in
    ENCRYPTION_KEY.
    """
    return Fernet.generate_key().decode("utf-8")
