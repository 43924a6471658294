"""WhatsApp message template status mirror."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from waconnect.persistence.database import Base


class MessageTemplate(Base):
    __tablename__ = "whatsapp_message_templates"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    template_id = Column(String(64), nullable=False, index=True)  # Meta message_template_id
    name = Column(String(255), nullable=False)
    language = Column(String(20), nullable=True)
    category = Column(String(50), nullable=True)
    status = Column(String(50), default="PENDING", nullable=False)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
