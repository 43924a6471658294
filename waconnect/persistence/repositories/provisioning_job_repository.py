"""Repository for provisioning jobs."""

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.provisioning_job import ProvisioningJob
from waconnect.persistence.repositories.base import BaseRepository


class ProvisioningJobRepository(BaseRepository[ProvisioningJob]):
    def __init__(self, session: AsyncSession):
        super().__init__(ProvisioningJob, session)

    async def get_latest(self, tenant_id: int) -> ProvisioningJob | None:
        stmt = (
            select(ProvisioningJob)
            .where(ProvisioningJob.tenant_id == tenant_id)
            .order_by(ProvisioningJob.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_by_tenant(self, tenant_id: int) -> int:
        result = await self.session.execute(
            delete(ProvisioningJob).where(ProvisioningJob.tenant_id == tenant_id)
        )
        return result.rowcount or 0
