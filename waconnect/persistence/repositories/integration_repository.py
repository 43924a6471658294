"""Repository for WhatsApp integration state."""

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.whatsapp_integration import WhatsAppIntegration
from waconnect.persistence.repositories.base import BaseRepository


class WhatsAppIntegrationRepository(BaseRepository[WhatsAppIntegration]):
    """Repository for the per-tenant integration row."""

    def __init__(self, session: AsyncSession):
        super().__init__(WhatsAppIntegration, session)

    async def get_by_tenant(self, tenant_id: int) -> WhatsAppIntegration | None:
        stmt = select(WhatsAppIntegration).where(WhatsAppIntegration.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_phone_number_id(self, phone_number_id: str) -> WhatsAppIntegration | None:
        """Find the integration that owns a Meta phone number id.

        Used by webhook ingestion to resolve the tenant of an event.
        """
        stmt = (
            select(WhatsAppIntegration)
            .where(WhatsAppIntegration.phone_number_id == phone_number_id)
            .order_by(WhatsAppIntegration.updated_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_waba_id(self, waba_id: str) -> WhatsAppIntegration | None:
        stmt = (
            select(WhatsAppIntegration)
            .where(WhatsAppIntegration.waba_id == waba_id)
            .order_by(WhatsAppIntegration.updated_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, tenant_id: int, **fields) -> WhatsAppIntegration:
        """Create or update the single integration row for a tenant.

        Keys set to None are applied as-is; callers pass only the fields
        they mean to change.
        """
        integration = await self.get_by_tenant(tenant_id)
        if integration is None:
            return await self.create(tenant_id, **fields)
        return await self.update(integration, **fields)

    async def delete_by_tenant(self, tenant_id: int) -> int:
        result = await self.session.execute(
            delete(WhatsAppIntegration).where(WhatsAppIntegration.tenant_id == tenant_id)
        )
        return result.rowcount or 0
