"""Field-level encryption for stored Meta access tokens.

Uses Fernet symmetric encryption. Encryption is active only when
FIELD_ENCRYPTION_KEY is configured; otherwise values are stored as-is.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:"


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""
    pass


class EncryptionService:
    """Encrypts and decrypts token values with a Fernet key."""

    def __init__(self, key: str | None) -> None:
        self._fernet: Optional[Fernet] = None
        if key:
            try:
                self._fernet = Fernet(key.encode())
            except (ValueError, TypeError) as e:
                logger.error(f"Invalid FIELD_ENCRYPTION_KEY format: {e}")
        if self._fernet is None:
            logger.warning("No encryption key configured - token encryption disabled")

    @property
    def is_enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string.

        Returns:
            Encrypted value prefixed with 'enc:', or the plaintext when
            encryption is disabled
        """
        if not plaintext or not self._fernet:
            return plaintext
        try:
            return ENCRYPTED_PREFIX + self._fernet.encrypt(plaintext.encode()).decode()
        except Exception as e:
            raise EncryptionError(f"Failed to encrypt value: {e}") from e

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a value written by encrypt().

        Values without the 'enc:' prefix are returned unchanged.

        Raises:
            EncryptionError: If the key is missing or does not match
        """
        if not ciphertext or not ciphertext.startswith(ENCRYPTED_PREFIX):
            return ciphertext
        if not self._fernet:
            raise EncryptionError("Cannot decrypt: encryption key not configured")
        try:
            return self._fernet.decrypt(ciphertext[len(ENCRYPTED_PREFIX):].encode()).decode()
        except InvalidToken:
            raise EncryptionError("Failed to decrypt: invalid token or wrong key")


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get the process-wide encryption service."""
    global _encryption_service
    if _encryption_service is None:
        from waconnect.settings import settings

        _encryption_service = EncryptionService(settings.field_encryption_key)
    return _encryption_service


def reset_encryption_service() -> None:
    """Drop the cached service so the next call re-reads the key."""
    global _encryption_service
    _encryption_service = None


def encrypt_field(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return get_encryption_service().encrypt(value)


def decrypt_field(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return get_encryption_service().decrypt(value)
