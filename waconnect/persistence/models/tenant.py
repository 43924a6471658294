"""Tenant model."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from waconnect.persistence.database import Base


class Tenant(Base):
    """Business account on whose behalf the integration operates."""

    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)  # Updated to the WhatsApp display number on activation
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name})>"
