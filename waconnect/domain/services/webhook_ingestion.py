"""WhatsApp webhook handshake and event ingestion.

Each inbound message is written to the unified inbox and the raw ledger in
one transaction. The per-tenant unique message id constraints on both tables
are the dedupe guard; the Redis processed-id cache only skips work early.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.core.phone import mask_phone_number, normalize_phone_e164
from waconnect.core.tenant_context import set_tenant_context, tenant_scope
from waconnect.domain.models.webhook_events import (
    AccountEvent,
    MessageEvent,
    StatusEvent,
    TemplateStatusEvent,
    parse_webhook_payload,
)
from waconnect.infrastructure.redis import RedisClient, processed_message_key, redis_client
from waconnect.persistence.models.whatsapp_ledger import ledger_conversation_id
from waconnect.persistence.repositories.inbox_repository import InboxRepository
from waconnect.persistence.repositories.integration_repository import WhatsAppIntegrationRepository
from waconnect.persistence.repositories.ledger_repository import WhatsAppLedgerRepository
from waconnect.persistence.repositories.template_repository import MessageTemplateRepository
from waconnect.settings import settings

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE = "subscribe"

STATUS_RANK = {"pending": 0, "sent": 1, "delivered": 2, "read": 3}
FAILED_STATUS = "failed"


def verify_handshake(mode: str | None, verify_token: str | None, challenge: str | None) -> str | None:
    """Return the challenge to echo, or None to refuse."""
    expected = settings.meta_webhook_verify_token
    if not expected:
        logger.warning("Webhook verification refused: META_WEBHOOK_VERIFY_TOKEN is not configured")
        return None
    if mode != SUBSCRIBE_MODE or not verify_token:
        return None
    if not hmac.compare_digest(verify_token.encode(), expected.encode()):
        return None
    return challenge or ""


def verify_signature(raw_body: bytes, signature_header: str | None, app_secret: str) -> bool:
    """Check X-Hub-Signature-256 (``sha256=<hex>``) against the raw body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256="):])


def should_apply_status(current: str | None, new: str) -> bool:
    """Delivery statuses only move forward; failed is terminal."""
    if current == FAILED_STATUS:
        return False
    if new == FAILED_STATUS:
        return current != "read"
    if new not in STATUS_RANK:
        return False
    return STATUS_RANK[new] > STATUS_RANK.get(current, -1)


@dataclass
class IngestionSummary:
    messages_stored: int = 0
    duplicates: int = 0
    skipped: int = 0
    statuses_applied: int = 0
    statuses_ignored: int = 0
    templates_updated: int = 0
    accounts_updated: int = 0
    ignored: int = 0
    errors: int = 0


class WebhookIngestionService:
    """Applies parsed webhook events to the database."""

    def __init__(self, session: AsyncSession, cache: RedisClient | None = None):
        self.session = session
        self.cache = cache or redis_client
        self.integrations = WhatsAppIntegrationRepository(session)
        self.inbox = InboxRepository(session)
        self.ledger = WhatsAppLedgerRepository(session)
        self.templates = MessageTemplateRepository(session)

    async def ingest(self, payload: Any) -> IngestionSummary:
        """Process one webhook body. Errors are counted per event, never raised."""
        summary = IngestionSummary()
        for event in parse_webhook_payload(payload):
            with tenant_scope():
                try:
                    if isinstance(event, MessageEvent):
                        await self._ingest_message(event, summary)
                    elif isinstance(event, StatusEvent):
                        await self._apply_status(event, summary)
                    elif isinstance(event, TemplateStatusEvent):
                        await self._apply_template_status(event, summary)
                    elif isinstance(event, AccountEvent):
                        await self._apply_account_event(event, summary)
                except Exception:
                    summary.errors += 1
                    logger.exception(
                        "Failed to process WhatsApp webhook event",
                        extra={"event_type": type(event).__name__},
                    )
                    await self.session.rollback()
        logger.info("WhatsApp webhook processed", extra={"summary": summary.__dict__})
        return summary

    async def _ingest_message(self, event: MessageEvent, summary: IngestionSummary) -> None:
        integration = await self.integrations.get_by_phone_number_id(event.phone_number_id)
        if integration is None:
            summary.skipped += 1
            logger.warning(
                "No integration for WhatsApp phone number, skipping message",
                extra={"phone_number_id": event.phone_number_id, "from_phone": mask_phone_number(event.from_phone)},
            )
            return

        # Plain values: ORM state is expired by a rollback below
        tenant_id = integration.tenant_id
        business_number = integration.display_phone_number or event.display_phone_number
        set_tenant_context(tenant_id)

        cache_key = processed_message_key(tenant_id, event.message_id)
        if await self.cache.exists(cache_key):
            summary.duplicates += 1
            return

        stored = False
        for attempt in (1, 2):
            try:
                stored = await self._write_message(tenant_id, business_number, event)
                await self.session.commit()
                break
            except IntegrityError:
                # A concurrent delivery inserted the same message; retry sees it
                await self.session.rollback()
                if attempt == 2:
                    stored = False

        if stored:
            summary.messages_stored += 1
            logger.info(
                "WhatsApp message stored",
                extra={"message_type": event.message_type, "from_phone": mask_phone_number(event.from_phone)},
            )
        else:
            summary.duplicates += 1
        await self.cache.set(cache_key, "1", ttl=settings.message_dedup_ttl_seconds)

    async def _write_message(self, tenant_id: int, business_number: str | None, event: MessageEvent) -> bool:
        """Write both projections of one inbound message; False if both already exist."""
        at = event.timestamp or datetime.utcnow()
        conversation_id = ledger_conversation_id(tenant_id, event.from_phone)

        in_inbox = await self.inbox.get_message(tenant_id, event.message_id) is not None
        in_ledger = await self.ledger.get_message(tenant_id, event.message_id) is not None
        if in_inbox and in_ledger:
            return False

        if not in_inbox:
            contact = await self.inbox.upsert_contact(
                tenant_id,
                normalize_phone_e164(event.from_phone),
                event.contact_name,
                at,
                inbound=True,
            )
            conversation = await self.inbox.upsert_conversation(
                tenant_id, contact.id, conversation_id, event.phone_number_id, at
            )
            await self.inbox.add_message(
                tenant_id=tenant_id,
                conversation_id=conversation.id,
                external_message_id=event.message_id,
                direction="inbound",
                content=event.preview,
                content_type=event.message_type,
                delivery_status="delivered",
                message_metadata={
                    "channel": "whatsapp",
                    "phone_number_id": event.phone_number_id,
                    "context_message_id": event.context_message_id,
                },
            )

        if not in_ledger:
            await self.ledger.touch_contact(tenant_id, event.from_phone, event.contact_name, at)
            await self.ledger.get_or_create_conversation(
                conversation_id, tenant_id, event.from_phone, event.phone_number_id, at
            )
            await self.ledger.add_message(
                tenant_id=tenant_id,
                message_id=event.message_id,
                conversation_id=conversation_id,
                phone_number_id=event.phone_number_id,
                direction="inbound",
                from_phone=event.from_phone,
                to_phone=business_number,
                message_type=event.message_type,
                content=event.content,
                status="delivered",
                sent_at=event.timestamp,
                message_metadata={
                    "whatsapp_id": event.message_id,
                    "timestamp": event.timestamp.isoformat() if event.timestamp else None,
                },
            )
        return True

    async def _apply_status(self, event: StatusEvent, summary: IngestionSummary) -> None:
        tenant_id = None
        if event.phone_number_id:
            integration = await self.integrations.get_by_phone_number_id(event.phone_number_id)
            tenant_id = integration.tenant_id if integration else None

        if tenant_id is not None:
            ledger_message = await self.ledger.get_message(tenant_id, event.message_id)
        else:
            ledger_message = await self.ledger.find_message(event.message_id)
            tenant_id = ledger_message.tenant_id if ledger_message else None
        inbox_message = await self.inbox.get_message(tenant_id, event.message_id) if tenant_id else None

        if ledger_message is None and inbox_message is None:
            summary.statuses_ignored += 1
            logger.debug("Status for unknown message ignored", extra={"status": event.status})
            return

        applied = False
        if ledger_message is not None and should_apply_status(ledger_message.status, event.status):
            ledger_message.status = event.status
            if event.errors:
                metadata = dict(ledger_message.message_metadata or {})
                metadata["errors"] = event.errors
                ledger_message.message_metadata = metadata
            applied = True
        if inbox_message is not None and should_apply_status(inbox_message.delivery_status, event.status):
            inbox_message.delivery_status = event.status
            applied = True

        if applied:
            await self.session.commit()
            summary.statuses_applied += 1
        else:
            summary.statuses_ignored += 1

    async def _apply_template_status(self, event: TemplateStatusEvent, summary: IngestionSummary) -> None:
        template = await self.templates.get_by_template_id(event.template_id)
        if template is None:
            summary.ignored += 1
            logger.info("Template status for unknown template ignored", extra={"template_id": event.template_id})
            return
        template.status = event.event or template.status
        template.rejection_reason = event.reason if event.reason and event.reason != "NONE" else None
        await self.session.commit()
        summary.templates_updated += 1

    async def _apply_account_event(self, event: AccountEvent, summary: IngestionSummary) -> None:
        integration = await self.integrations.get_by_waba_id(event.waba_id) if event.waba_id else None
        if integration is None:
            summary.ignored += 1
            logger.info("Account event for unknown account ignored", extra={"field": event.field})
            return

        if event.field == "phone_number_quality_update":
            integration.quality_rating = event.event
        elif event.field in ("account_update", "account_review_update"):
            integration.account_status = event.event

        metadata = dict(integration.integration_metadata or {})
        account_events = dict(metadata.get("account_events") or {})
        account_events[event.field] = event.details
        metadata["account_events"] = account_events
        integration.integration_metadata = metadata
        await self.session.commit()
        summary.accounts_updated += 1
