"""Raw WhatsApp message ledger.

Conversations are keyed by ``"{tenant_id}_{counterpart_phone}"`` so inbound
and outbound flows converge on the same row.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from waconnect.persistence.database import Base


def ledger_conversation_id(tenant_id: int, phone: str) -> str:
    """Deterministic conversation id for a tenant and counterpart number."""
    return f"{tenant_id}_{phone}"


class WhatsAppContact(Base):
    """Counterpart seen on the WhatsApp channel."""

    __tablename__ = "whatsapp_contacts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_whatsapp_contacts_tenant_phone"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    phone_number = Column(String(50), nullable=False)
    name = Column(String(255), nullable=True)
    status = Column(String(50), default="active", nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class WhatsAppConversation(Base):
    __tablename__ = "whatsapp_conversations"

    id = Column(String(128), primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    contact_phone = Column(String(50), nullable=False)
    phone_number_id = Column(String(64), nullable=True)
    status = Column(String(50), default="open", nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class WhatsAppMessage(Base):
    """One row per Meta message id. The unique constraint is the dedupe guard."""

    __tablename__ = "whatsapp_messages"
    __table_args__ = (
        UniqueConstraint("tenant_id", "message_id", name="uq_whatsapp_messages_tenant_message"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    message_id = Column(String(255), nullable=False, index=True)
    conversation_id = Column(String(128), ForeignKey("whatsapp_conversations.id"), nullable=False, index=True)
    phone_number_id = Column(String(64), nullable=True)
    direction = Column(String(20), nullable=False)  # inbound, outbound
    from_phone = Column(String(50), nullable=True)
    to_phone = Column(String(50), nullable=True)
    message_type = Column(String(50), nullable=False)
    content = Column(JSON, nullable=True)
    status = Column(String(20), default="pending", nullable=False)
    sent_at = Column(DateTime, nullable=True)  # Meta timestamp
    message_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WhatsAppMessage(id={self.id}, message_id={self.message_id}, status={self.status})>"
