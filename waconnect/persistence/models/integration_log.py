"""Append-only log of onboarding pipeline steps."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from waconnect.persistence.database import Base


class IntegrationLog(Base):
    """One entry per attempted pipeline step. Never updated or deleted."""

    __tablename__ = "whatsapp_integration_logs"

    id = Column(Integer, primary_key=True, index=True)
    # No foreign key: entries outlive a disconnected integration
    tenant_id = Column(Integer, nullable=False, index=True)
    step = Column(String(100), nullable=False, index=True)
    strategy = Column(String(100), nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<IntegrationLog(id={self.id}, tenant_id={self.tenant_id}, "
            f"step={self.step}, success={self.success})>"
        )
