"""Per-tenant WhatsApp integration state."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.domain.services.audit_service import IntegrationAuditService
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus, WhatsAppIntegration
from waconnect.persistence.repositories.integration_repository import WhatsAppIntegrationRepository
from waconnect.persistence.repositories.oauth_credential_repository import OAuthCredentialRepository
from waconnect.persistence.repositories.provisioning_job_repository import ProvisioningJobRepository

logger = logging.getLogger(__name__)


class IntegrationNotFoundError(Exception):
    """Raised when a tenant has no WhatsApp integration."""

    def __init__(self, tenant_id: int) -> None:
        self.tenant_id = tenant_id
        super().__init__("WhatsApp integration not found")


class InvalidStateError(Exception):
    """Raised when an operation does not fit the integration's current state."""


class IntegrationStateService:
    """Connect, read, and tear down a tenant's integration record."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.integrations = WhatsAppIntegrationRepository(session)
        self.credentials = OAuthCredentialRepository(session)
        self.jobs = ProvisioningJobRepository(session)
        self.audit = IntegrationAuditService(session)

    async def connect(self, tenant_id: int, **fields: Any) -> WhatsAppIntegration:
        """Create or update the tenant's integration (flushes, does not commit).

        Moving to ACTIVE stamps connected_at.
        """
        status = fields.get("connection_status")
        if isinstance(status, ConnectionStatus):
            fields["connection_status"] = status.value
        if fields.get("connection_status") == ConnectionStatus.ACTIVE.value:
            fields.setdefault("connected_at", datetime.utcnow())
        return await self.integrations.upsert(tenant_id, **fields)

    async def get(self, tenant_id: int) -> WhatsAppIntegration | None:
        return await self.integrations.get_by_tenant(tenant_id)

    async def require(self, tenant_id: int) -> WhatsAppIntegration:
        integration = await self.get(tenant_id)
        if integration is None:
            raise IntegrationNotFoundError(tenant_id)
        return integration

    async def get_by_phone_number_id(self, phone_number_id: str) -> WhatsAppIntegration | None:
        return await self.integrations.get_by_phone_number_id(phone_number_id)

    async def cache_phone_numbers(self, tenant_id: int, numbers: list[dict[str, Any]]) -> None:
        integration = await self.get(tenant_id)
        if integration is None:
            return
        metadata = dict(integration.integration_metadata or {})
        metadata["phone_numbers"] = numbers
        metadata["phone_numbers_cached_at"] = datetime.utcnow().isoformat()
        integration.integration_metadata = metadata
        await self.session.flush()

    async def disconnect(self, tenant_id: int) -> bool:
        """Remove the integration, its credentials, and provisioning jobs.

        Contact, conversation, and message history is kept. Commits.

        Returns:
            True if an integration row existed
        """
        jobs_removed = await self.jobs.delete_by_tenant(tenant_id)
        credentials_removed = await self.credentials.delete_by_tenant(tenant_id)
        integrations_removed = await self.integrations.delete_by_tenant(tenant_id)

        await self.audit.log_step(
            tenant_id,
            "disconnect",
            success=True,
            details={
                "integrations_removed": integrations_removed,
                "credentials_removed": credentials_removed,
                "jobs_removed": jobs_removed,
            },
        )
        await self.session.commit()
        logger.info("WhatsApp integration disconnected", extra={"had_integration": bool(integrations_removed)})
        return integrations_removed > 0
