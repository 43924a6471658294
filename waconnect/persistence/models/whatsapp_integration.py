"""WhatsApp integration state, one row per tenant."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String

from waconnect.persistence.database import Base
from waconnect.persistence.types import EncryptedText


class ConnectionStatus(str, Enum):
    """Lifecycle of a tenant's WhatsApp connection."""

    PENDING = "pending"
    AWAITING_WABA_CREATION = "awaiting_waba_creation"
    PROVISIONING = "provisioning"
    UNCLAIMED = "unclaimed"
    VERIFYING = "verifying"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class WhatsAppIntegration(Base):
    """Persisted connection record for a tenant's WhatsApp Business account."""

    __tablename__ = "whatsapp_integrations"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, unique=True, index=True)

    # Meta identities
    business_id = Column(String(64), nullable=True)
    waba_id = Column(String(64), nullable=True, index=True)
    phone_number_id = Column(String(64), nullable=True, index=True)
    display_phone_number = Column(String(50), nullable=True)

    connection_status = Column(String(50), default=ConnectionStatus.PENDING.value, nullable=False)
    resolution_strategy = Column(String(100), nullable=True)  # Which discoverer/creator produced waba_id

    access_token = Column(EncryptedText, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # Denormalized from account-level webhooks
    account_status = Column(String(100), nullable=True)
    quality_rating = Column(String(50), nullable=True)

    # Cached phone number list and other loosely-typed details
    integration_metadata = Column("metadata", JSON, nullable=True)

    connected_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def cached_phone_numbers(self) -> list[dict]:
        return list((self.integration_metadata or {}).get("phone_numbers") or [])

    def __repr__(self) -> str:
        return (
            f"<WhatsAppIntegration(id={self.id}, tenant_id={self.tenant_id}, "
            f"status={self.connection_status})>"
        )
