"""Repository for message templates."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.message_template import MessageTemplate
from waconnect.persistence.repositories.base import BaseRepository


class MessageTemplateRepository(BaseRepository[MessageTemplate]):
    def __init__(self, session: AsyncSession):
        super().__init__(MessageTemplate, session)

    async def get_by_template_id(self, template_id: str) -> MessageTemplate | None:
        stmt = select(MessageTemplate).where(MessageTemplate.template_id == template_id).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
