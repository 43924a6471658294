"""Send WhatsApp messages from a tenant's primary number."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.core.phone import digits_only, mask_phone_number, normalize_phone_e164
from waconnect.domain.services.integration_state import IntegrationStateService, InvalidStateError
from waconnect.domain.services.phone_registry import PhoneRegistry
from waconnect.infrastructure.meta_graph_client import MetaGraphClient, MetaGraphError, get_graph_client
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus
from waconnect.persistence.models.whatsapp_ledger import ledger_conversation_id
from waconnect.persistence.repositories.inbox_repository import InboxRepository
from waconnect.persistence.repositories.ledger_repository import WhatsAppLedgerRepository

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    message_id: str
    conversation_id: str
    to: str
    status: str = "sent"


class OutboundMessageService:
    """Sends through the Cloud API and records the message in both read-models."""

    def __init__(self, session: AsyncSession, graph: MetaGraphClient | None = None):
        self.session = session
        self.graph = graph or get_graph_client()
        self.state = IntegrationStateService(session)
        self.inbox = InboxRepository(session)
        self.ledger = WhatsAppLedgerRepository(session)

    async def send_text(self, tenant_id: int, to: str, body: str) -> SendResult:
        content = {"text": {"body": body}}
        payload = {"text": {"preview_url": False, "body": body}}
        return await self._send(tenant_id, to, "text", content, payload, preview=body)

    async def send_template(
        self,
        tenant_id: int,
        to: str,
        template_name: str,
        language: str = "en_US",
        parameters: list[dict[str, Any]] | None = None,
    ) -> SendResult:
        template = {
            "name": template_name,
            "language": {"code": language},
            "components": [{"type": "body", "parameters": parameters}] if parameters else [],
        }
        return await self._send(
            tenant_id, to, "template", {"template": template}, {"template": template},
            preview=f"[template {template_name}]",
        )

    async def _send(
        self,
        tenant_id: int,
        to: str,
        message_type: str,
        content: dict[str, Any],
        payload: dict[str, Any],
        preview: str,
    ) -> SendResult:
        """Send, then persist. Commits.

        Raises:
            IntegrationNotFoundError: If the tenant has no integration
            InvalidStateError: If the integration is not active
            MetaGraphError: If Meta rejects the send
        """
        integration = await self.state.require(tenant_id)
        if integration.connection_status != ConnectionStatus.ACTIVE.value or not integration.phone_number_id:
            raise InvalidStateError("WhatsApp integration is not active")

        recipient = digits_only(to)
        if not recipient:
            raise InvalidStateError("Recipient phone number is required")
        token = await PhoneRegistry(self.session, self.graph).access_token_for(integration)
        phone_number_id = integration.phone_number_id
        business_number = integration.display_phone_number

        response = await self.graph.post(
            f"/{phone_number_id}/messages",
            access_token=token,
            json={"messaging_product": "whatsapp", "recipient_type": "individual", "to": recipient, "type": message_type, **payload},
        )
        messages = response.get("messages") or []
        if not messages or not messages[0].get("id"):
            raise MetaGraphError("Send response did not include a message id")
        message_id = str(messages[0]["id"])

        now = datetime.utcnow()
        conversation_id = ledger_conversation_id(tenant_id, recipient)
        try:
            contact = await self.inbox.upsert_contact(
                tenant_id, normalize_phone_e164(recipient), None, now, inbound=False
            )
            conversation = await self.inbox.upsert_conversation(
                tenant_id, contact.id, conversation_id, phone_number_id, now
            )
            await self.inbox.add_message(
                tenant_id=tenant_id,
                conversation_id=conversation.id,
                external_message_id=message_id,
                direction="outbound",
                content=preview,
                content_type=message_type,
                delivery_status="sent",
                message_metadata={"channel": "whatsapp", "phone_number_id": phone_number_id},
            )
            await self.ledger.touch_contact(tenant_id, recipient, None, now)
            await self.ledger.get_or_create_conversation(conversation_id, tenant_id, recipient, phone_number_id, now)
            await self.ledger.add_message(
                tenant_id=tenant_id,
                message_id=message_id,
                conversation_id=conversation_id,
                phone_number_id=phone_number_id,
                direction="outbound",
                from_phone=business_number,
                to_phone=recipient,
                message_type=message_type,
                content=content,
                status="sent",
                sent_at=now,
                message_metadata={"whatsapp_id": message_id},
            )
            await self.session.commit()
        except IntegrityError:
            # Status webhook for this id cannot create rows, so this is a replayed send
            await self.session.rollback()
            logger.warning("Outbound message already recorded", extra={"whatsapp_message_id": message_id})

        logger.info("WhatsApp message sent", extra={"to_phone": mask_phone_number(recipient), "message_type": message_type})
        return SendResult(message_id=message_id, conversation_id=conversation_id, to=recipient)
