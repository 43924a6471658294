"""Repository for the unified inbox read-model."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.inbox import Contact, Conversation, Message

WHATSAPP_CHANNEL = "whatsapp"


class InboxRepository:
    """Contacts, conversations, and messages as the cross-channel inbox sees them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_contact_by_phone(self, tenant_id: int, phone: str) -> Contact | None:
        stmt = select(Contact).where(Contact.tenant_id == tenant_id, Contact.phone == phone)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_contact(
        self,
        tenant_id: int,
        phone: str,
        name: str | None,
        at: datetime,
        inbound: bool = True,
    ) -> Contact:
        """Create the contact on first sight, else refresh name and activity.

        Only inbound messages increment the unread counter.
        """
        contact = await self.get_contact_by_phone(tenant_id, phone)
        if contact is None:
            contact = Contact(
                tenant_id=tenant_id,
                phone=phone,
                name=name or phone,
                status="active",
                unread_count=1 if inbound else 0,
                last_message_at=at,
            )
            self.session.add(contact)
        else:
            if name:
                contact.name = name
            contact.last_message_at = at
            if inbound:
                contact.unread_count = (contact.unread_count or 0) + 1
        await self.session.flush()
        return contact

    async def upsert_conversation(
        self,
        tenant_id: int,
        contact_id: int,
        external_id: str,
        phone_number_id: str | None,
        at: datetime,
    ) -> Conversation:
        stmt = select(Conversation).where(
            Conversation.tenant_id == tenant_id,
            Conversation.channel == WHATSAPP_CHANNEL,
            Conversation.external_id == external_id,
        )
        result = await self.session.execute(stmt)
        conversation = result.scalar_one_or_none()
        if conversation is None:
            conversation = Conversation(
                tenant_id=tenant_id,
                contact_id=contact_id,
                channel=WHATSAPP_CHANNEL,
                external_id=external_id,
                status="open",
                phone_number_id=phone_number_id,
                last_message_at=at,
            )
            self.session.add(conversation)
        else:
            conversation.last_message_at = at
            conversation.status = "open"
        await self.session.flush()
        return conversation

    async def get_message(self, tenant_id: int, external_message_id: str) -> Message | None:
        stmt = select(Message).where(
            Message.tenant_id == tenant_id,
            Message.external_message_id == external_message_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_message(self, **data) -> Message:
        message = Message(**data)
        self.session.add(message)
        await self.session.flush()
        return message

    async def count_messages(self, tenant_id: int, external_message_id: str) -> int:
        stmt = select(Message.id).where(
            Message.tenant_id == tenant_id,
            Message.external_message_id == external_message_id,
        )
        result = await self.session.execute(stmt)
        return len(result.all())
