"""Custom SQLAlchemy types."""

from typing import Optional

from sqlalchemy import Text, TypeDecorator

from waconnect.core.encryption import decrypt_field, encrypt_field


class EncryptedText(TypeDecorator):
    """Text column that is encrypted at rest.

    Usage:
        access_token = Column(EncryptedText, nullable=True)

    Values are encrypted before being stored and decrypted when read. The
    'enc:' prefix marks encrypted values so plaintext rows written before a
    key was configured remain readable.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return encrypt_field(value)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return decrypt_field(value)
