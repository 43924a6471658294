"""OAuth credential issued by Meta for a tenant."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from waconnect.persistence.database import Base
from waconnect.persistence.types import EncryptedText


class OAuthCredential(Base):
    """One row per completed authorization callback.

    The nonce comes from the signed OAuth state; a repeated (tenant, nonce)
    pair identifies a replayed callback.
    """

    __tablename__ = "oauth_credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "nonce", name="uq_oauth_credentials_tenant_nonce"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    provider = Column(String(50), default="meta", nullable=False)
    business_id = Column(String(64), nullable=True)
    access_token = Column(EncryptedText, nullable=False)
    token_type = Column(String(50), default="bearer", nullable=False)
    expires_at = Column(DateTime, nullable=True)
    scopes = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    nonce = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<OAuthCredential(id={self.id}, tenant_id={self.tenant_id}, active={self.is_active})>"
