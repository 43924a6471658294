"""Background provisioning job progress."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from waconnect.persistence.database import Base


class ProvisioningJobStatus(str, Enum):
    RUNNING = "running"
    FOUND = "found"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({
    ProvisioningJobStatus.FOUND.value,
    ProvisioningJobStatus.EXHAUSTED.value,
    ProvisioningJobStatus.CANCELLED.value,
    ProvisioningJobStatus.FAILED.value,
})


class ProvisioningJob(Base):
    """Status row for a poll waiting on a newly created WhatsApp account."""

    __tablename__ = "whatsapp_provisioning_jobs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    business_id = Column(String(64), nullable=True)
    status = Column(String(50), default=ProvisioningJobStatus.RUNNING.value, nullable=False)
    attempts_used = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, nullable=False)
    waba_id = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    deadline_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def __repr__(self) -> str:
        return f"<ProvisioningJob(id={self.id}, tenant_id={self.tenant_id}, status={self.status})>"
