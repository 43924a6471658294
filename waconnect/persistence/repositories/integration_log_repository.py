"""Repository for integration step logs."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.integration_log import IntegrationLog
from waconnect.persistence.repositories.base import BaseRepository


class IntegrationLogRepository(BaseRepository[IntegrationLog]):
    def __init__(self, session: AsyncSession):
        super().__init__(IntegrationLog, session)

    async def list_for_tenant(
        self,
        tenant_id: int,
        step: str | None = None,
        limit: int = 100,
    ) -> list[IntegrationLog]:
        """List log entries oldest first."""
        stmt = select(IntegrationLog).where(IntegrationLog.tenant_id == tenant_id)
        if step:
            stmt = stmt.where(IntegrationLog.step == step)
        stmt = stmt.order_by(IntegrationLog.created_at, IntegrationLog.id).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
