"""Tenant repository."""

from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.tenant import Tenant
from waconnect.persistence.repositories.base import BaseRepository


class TenantRepository(BaseRepository[Tenant]):
    def __init__(self, session: AsyncSession):
        super().__init__(Tenant, session)

    async def update_phone(self, tenant_id: int, phone: str) -> bool:
        tenant = await self.get_by_id(None, tenant_id)
        if tenant is None:
            return False
        tenant.phone = phone
        await self.session.flush()
        return True
