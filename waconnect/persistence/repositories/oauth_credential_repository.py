"""Repository for Meta OAuth credentials."""

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.oauth_credential import OAuthCredential
from waconnect.persistence.repositories.base import BaseRepository


class OAuthCredentialRepository(BaseRepository[OAuthCredential]):
    def __init__(self, session: AsyncSession):
        super().__init__(OAuthCredential, session)

    async def get_by_nonce(self, tenant_id: int, nonce: str) -> OAuthCredential | None:
        stmt = select(OAuthCredential).where(
            OAuthCredential.tenant_id == tenant_id,
            OAuthCredential.nonce == nonce,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active(self, tenant_id: int) -> OAuthCredential | None:
        """Most recent active credential for the tenant."""
        stmt = (
            select(OAuthCredential)
            .where(OAuthCredential.tenant_id == tenant_id, OAuthCredential.is_active.is_(True))
            .order_by(OAuthCredential.created_at.desc(), OAuthCredential.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def deactivate_all(self, tenant_id: int) -> None:
        await self.session.execute(
            update(OAuthCredential)
            .where(OAuthCredential.tenant_id == tenant_id, OAuthCredential.is_active.is_(True))
            .values(is_active=False)
        )

    async def delete_by_tenant(self, tenant_id: int) -> int:
        result = await self.session.execute(
            delete(OAuthCredential).where(OAuthCredential.tenant_id == tenant_id)
        )
        return result.rowcount or 0
