"""Repository for the raw WhatsApp message ledger."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.whatsapp_ledger import (
    WhatsAppContact,
    WhatsAppConversation,
    WhatsAppMessage,
)


class WhatsAppLedgerRepository:
    """Contacts, conversations, and messages in their WhatsApp-native shape."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_contact(self, tenant_id: int, phone_number: str) -> WhatsAppContact | None:
        stmt = select(WhatsAppContact).where(
            WhatsAppContact.tenant_id == tenant_id,
            WhatsAppContact.phone_number == phone_number,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def touch_contact(
        self,
        tenant_id: int,
        phone_number: str,
        name: str | None,
        at: datetime,
    ) -> WhatsAppContact:
        """Create the contact or bump its counters."""
        contact = await self.get_contact(tenant_id, phone_number)
        if contact is None:
            contact = WhatsAppContact(
                tenant_id=tenant_id,
                phone_number=phone_number,
                name=name or phone_number,
                status="active",
                message_count=1,
                last_message_at=at,
            )
            self.session.add(contact)
        else:
            if name:
                contact.name = name
            contact.message_count = (contact.message_count or 0) + 1
            contact.last_message_at = at
            contact.status = "active"
        await self.session.flush()
        return contact

    async def get_or_create_conversation(
        self,
        conversation_id: str,
        tenant_id: int,
        contact_phone: str,
        phone_number_id: str | None,
        at: datetime,
    ) -> WhatsAppConversation:
        conversation = await self.session.get(WhatsAppConversation, conversation_id)
        if conversation is None:
            conversation = WhatsAppConversation(
                id=conversation_id,
                tenant_id=tenant_id,
                contact_phone=contact_phone,
                phone_number_id=phone_number_id,
                status="open",
                last_message_at=at,
            )
            self.session.add(conversation)
        else:
            conversation.last_message_at = at
            if phone_number_id:
                conversation.phone_number_id = phone_number_id
        await self.session.flush()
        return conversation

    async def get_message(self, tenant_id: int, message_id: str) -> WhatsAppMessage | None:
        stmt = select(WhatsAppMessage).where(
            WhatsAppMessage.tenant_id == tenant_id,
            WhatsAppMessage.message_id == message_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_message(self, message_id: str) -> WhatsAppMessage | None:
        """Look a message up by Meta id alone (status events carry no tenant)."""
        stmt = select(WhatsAppMessage).where(WhatsAppMessage.message_id == message_id).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_message(self, **data) -> WhatsAppMessage:
        message = WhatsAppMessage(**data)
        self.session.add(message)
        await self.session.flush()
        return message

    async def count_messages(self, tenant_id: int, message_id: str) -> int:
        stmt = select(WhatsAppMessage.id).where(
            WhatsAppMessage.tenant_id == tenant_id,
            WhatsAppMessage.message_id == message_id,
        )
        result = await self.session.execute(stmt)
        return len(result.all())

    async def list_messages(
        self,
        tenant_id: int,
        phone: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[WhatsAppMessage]:
        """Newest first, optionally limited to one counterpart number."""
        stmt = select(WhatsAppMessage).where(WhatsAppMessage.tenant_id == tenant_id)
        if phone:
            stmt = stmt.where(
                (WhatsAppMessage.from_phone == phone) | (WhatsAppMessage.to_phone == phone)
            )
        stmt = (
            stmt.order_by(WhatsAppMessage.created_at.desc(), WhatsAppMessage.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_contacts(self, tenant_id: int, skip: int = 0, limit: int = 50) -> list[WhatsAppContact]:
        stmt = (
            select(WhatsAppContact)
            .where(WhatsAppContact.tenant_id == tenant_id)
            .order_by(WhatsAppContact.last_message_at.desc(), WhatsAppContact.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
