"""Base repository with tenant-scoped queries."""

from typing import Generic, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.database import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository with tenant-scoped query methods.

    Writes are flushed, not committed, so a service can combine several
    repositories in one unit of work.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def get_by_id(self, tenant_id: int | None, id: int) -> ModelType | None:
        """Get entity by ID, scoped to tenant."""
        stmt = select(self.model).where(self.model.id == id)
        if tenant_id is not None:
            stmt = stmt.where(self.model.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(
        self,
        tenant_id: int | None,
        skip: int = 0,
        limit: int = 100,
        **filters,
    ) -> list[ModelType]:
        """List entities, scoped to tenant."""
        stmt = select(self.model)
        if tenant_id is not None:
            stmt = stmt.where(self.model.tenant_id == tenant_id)
        for key, value in filters.items():
            if hasattr(self.model, key):
                stmt = stmt.where(getattr(self.model, key) == value)
        stmt = stmt.order_by(self.model.id).offset(skip).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create(self, tenant_id: int | None, **data) -> ModelType:
        """Create new entity with tenant_id."""
        if tenant_id is not None:
            data["tenant_id"] = tenant_id
        instance = self.model(**data)
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def update(self, instance: ModelType, **data) -> ModelType:
        for key, value in data.items():
            setattr(instance, key, value)
        await self.session.flush()
        return instance
