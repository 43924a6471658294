"""Tests for webhook parsing and ingestion into the inbox and ledger."""

import hashlib
import hmac
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from waconnect.domain.models.webhook_events import (
    AccountEvent,
    MessageEvent,
    StatusEvent,
    TemplateStatusEvent,
    parse_webhook_payload,
)
from waconnect.domain.services.integration_state import IntegrationStateService
from waconnect.domain.services.webhook_ingestion import (
    WebhookIngestionService,
    should_apply_status,
    verify_handshake,
    verify_signature,
)
from waconnect.persistence.models.inbox import Contact, Conversation, Message
from waconnect.persistence.models.message_template import MessageTemplate
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus
from waconnect.persistence.models.whatsapp_ledger import WhatsAppContact, WhatsAppMessage
from waconnect.persistence.repositories.inbox_repository import InboxRepository
from waconnect.persistence.repositories.ledger_repository import WhatsAppLedgerRepository
from waconnect.settings import settings


def message_payload(message_id="wamid.in1", phone_number_id="PN1", from_phone="15551234567", body="Table for two tonight?"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "W1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "15550001111", "phone_number_id": phone_number_id},
                    "contacts": [{"profile": {"name": "Ada"}, "wa_id": from_phone}],
                    "messages": [{
                        "from": from_phone,
                        "id": message_id,
                        "timestamp": "1700000000",
                        "type": "text",
                        "text": {"body": body},
                    }],
                },
            }],
        }],
    }


def status_payload(message_id, status, phone_number_id="PN1"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "W1",
            "changes": [{
                "field": "messages",
                "value": {
                    "metadata": {"phone_number_id": phone_number_id},
                    "statuses": [{"id": message_id, "status": status, "timestamp": "1700000100", "recipient_id": "15551234567"}],
                },
            }],
        }],
    }


def change_payload(field, value, waba_id="W1"):
    return {"object": "whatsapp_business_account", "entry": [{"id": waba_id, "changes": [{"field": field, "value": value}]}]}


def malformed_batch():
    """One entry whose text body is not an object, followed by a valid entry."""
    bad = message_payload(message_id="wamid.bad")
    bad["entry"][0]["changes"][0]["value"]["messages"][0]["text"] = "plain string"
    good = message_payload(message_id="wamid.good")
    return {"object": "whatsapp_business_account", "entry": bad["entry"] + good["entry"]}


@pytest.fixture
async def integration(db_session, tenant):
    integration = await IntegrationStateService(db_session).connect(
        tenant.id,
        waba_id="W1",
        phone_number_id="PN1",
        display_phone_number="+1 555-000-1111",
        connection_status=ConnectionStatus.ACTIVE,
    )
    await db_session.commit()
    return integration


async def _count(session, model, **filters):
    stmt = select(model)
    for key, value in filters.items():
        stmt = stmt.where(getattr(model, key) == value)
    result = await session.execute(stmt)
    return len(result.scalars().all())


async def _sent_message(db_session, tenant_id, message_id, status="sent"):
    """Record an outbound message directly in both read-models."""
    now = datetime.utcnow()
    inbox = InboxRepository(db_session)
    contact = await inbox.upsert_contact(tenant_id, "+15551234567", None, now, inbound=False)
    conversation = await inbox.upsert_conversation(tenant_id, contact.id, f"{tenant_id}_15551234567", "PN1", now)
    await inbox.add_message(
        tenant_id=tenant_id,
        conversation_id=conversation.id,
        external_message_id=message_id,
        direction="outbound",
        content="See you at 7",
        content_type="text",
        delivery_status=status,
    )
    ledger = WhatsAppLedgerRepository(db_session)
    await ledger.touch_contact(tenant_id, "15551234567", None, now)
    await ledger.get_or_create_conversation(f"{tenant_id}_15551234567", tenant_id, "15551234567", "PN1", now)
    await ledger.add_message(
        tenant_id=tenant_id,
        message_id=message_id,
        conversation_id=f"{tenant_id}_15551234567",
        phone_number_id="PN1",
        direction="outbound",
        to_phone="15551234567",
        message_type="text",
        content={"text": {"body": "See you at 7"}},
        status=status,
    )
    await db_session.commit()


class TestParsing:
    """Webhook body to typed events."""

    def test_text_message(self):
        events = parse_webhook_payload(message_payload())

        assert len(events) == 1
        event = events[0]
        assert isinstance(event, MessageEvent)
        assert event.phone_number_id == "PN1"
        assert event.from_phone == "15551234567"
        assert event.contact_name == "Ada"
        assert event.content == {"text": {"body": "Table for two tonight?"}}
        assert event.preview == "Table for two tonight?"
        assert event.timestamp == datetime.utcfromtimestamp(1700000000)

    def test_media_message_preview_uses_caption(self):
        payload = message_payload()
        message = payload["entry"][0]["changes"][0]["value"]["messages"][0]
        message.pop("text")
        message["type"] = "image"
        message["image"] = {"id": "MEDIA1", "mime_type": "image/jpeg", "caption": "Our patio"}

        event = parse_webhook_payload(payload)[0]

        assert event.content == {"media": {"id": "MEDIA1", "mime_type": "image/jpeg", "caption": "Our patio"}}
        assert event.preview == "Our patio"

    def test_message_without_caption_gets_placeholder(self):
        payload = message_payload()
        message = payload["entry"][0]["changes"][0]["value"]["messages"][0]
        message.pop("text")
        message["type"] = "location"
        message["location"] = {"latitude": 1.0, "longitude": 2.0}

        event = parse_webhook_payload(payload)[0]

        assert event.preview == "[location message]"
        assert event.content == {"latitude": 1.0, "longitude": 2.0}

    def test_statuses(self):
        events = parse_webhook_payload(status_payload("wamid.out1", "DELIVERED"))

        assert events == [
            StatusEvent(
                message_id="wamid.out1",
                status="delivered",
                phone_number_id="PN1",
                recipient_id="15551234567",
                timestamp=datetime.utcfromtimestamp(1700000100),
            )
        ]

    def test_template_and_account_fields(self):
        template = parse_webhook_payload(change_payload(
            "message_template_status_update",
            {"event": "rejected", "message_template_id": 991, "message_template_name": "reservation", "reason": "INVALID_FORMAT"},
        ))
        account = parse_webhook_payload(change_payload("phone_number_quality_update", {"event": "FLAGGED", "display_phone_number": "15550001111"}))

        assert template == [TemplateStatusEvent(
            waba_id="W1", template_id="991", event="REJECTED", template_name="reservation", reason="INVALID_FORMAT",
        )]
        assert isinstance(account[0], AccountEvent)
        assert account[0].event == "FLAGGED"

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            "text",
            {"object": "whatsapp_business_account"},
            {"entry": "nope"},
            {"entry": [{"changes": [{"field": "messages", "value": "nope"}]}]},
            {"entry": [{"id": "W1", "changes": {"field": "messages"}}]},
            change_payload("security", {"event": "x"}),
        ],
    )
    def test_unusable_payloads_yield_nothing(self, payload):
        assert parse_webhook_payload(payload) == []

    def test_message_missing_ids_is_dropped(self):
        payload = message_payload()
        del payload["entry"][0]["changes"][0]["value"]["messages"][0]["id"]

        assert parse_webhook_payload(payload) == []

    def test_contacts_not_a_list_are_ignored(self):
        payload = message_payload()
        payload["entry"][0]["changes"][0]["value"]["contacts"] = {"wa_id": "15551234567"}

        events = parse_webhook_payload(payload)

        assert [e.message_id for e in events] == ["wamid.in1"]
        assert events[0].contact_name is None

    def test_malformed_change_does_not_drop_the_batch(self):
        payload = malformed_batch()

        events = parse_webhook_payload(payload)

        assert [e.message_id for e in events] == ["wamid.good"]


class TestHandshakeAndSignature:
    def test_handshake_echoes_challenge(self):
        assert verify_handshake("subscribe", "verify-me", "1158201444") == "1158201444"

    @pytest.mark.parametrize(
        "mode,token",
        [("subscribe", "wrong"), ("unsubscribe", "verify-me"), (None, "verify-me"), ("subscribe", None)],
    )
    def test_handshake_refused(self, mode, token):
        assert verify_handshake(mode, token, "1158201444") is None

    def test_handshake_refused_when_unconfigured(self, monkeypatch):
        monkeypatch.setattr(settings, "meta_webhook_verify_token", None)
        assert verify_handshake("subscribe", "verify-me", "1") is None

    def test_signature(self):
        body = b'{"object":"whatsapp_business_account"}'
        digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

        assert verify_signature(body, f"sha256={digest}", "app-secret") is True
        assert verify_signature(body + b" ", f"sha256={digest}", "app-secret") is False
        assert verify_signature(body, digest, "app-secret") is False
        assert verify_signature(body, None, "app-secret") is False


@pytest.mark.parametrize(
    "current,new,expected",
    [
        ("pending", "sent", True),
        ("sent", "delivered", True),
        ("delivered", "read", True),
        ("read", "delivered", False),
        ("delivered", "sent", False),
        ("sent", "sent", False),
        ("sent", "failed", True),
        ("delivered", "failed", True),
        ("read", "failed", False),
        ("failed", "read", False),
        ("sent", "deleted", False),
        (None, "sent", True),
    ],
)
def test_should_apply_status(current, new, expected):
    assert should_apply_status(current, new) is expected


class TestInboundMessages:
    """Both projections, dedupe, and unknown numbers."""

    @pytest.mark.asyncio
    async def test_message_lands_in_both_models(self, db_session, integration, tenant):
        summary = await WebhookIngestionService(db_session).ingest(message_payload())

        assert summary.messages_stored == 1
        contact = (await db_session.execute(select(Contact))).scalar_one()
        assert contact.phone == "+15551234567"
        assert contact.name == "Ada"
        assert contact.unread_count == 1
        conversation = (await db_session.execute(select(Conversation))).scalar_one()
        assert conversation.external_id == f"{tenant.id}_15551234567"
        assert conversation.channel == "whatsapp"
        inbox_message = (await db_session.execute(select(Message))).scalar_one()
        assert inbox_message.direction == "inbound"
        assert inbox_message.content == "Table for two tonight?"

        ledger_message = (await db_session.execute(select(WhatsAppMessage))).scalar_one()
        assert ledger_message.conversation_id == f"{tenant.id}_15551234567"
        assert ledger_message.from_phone == "15551234567"
        assert ledger_message.to_phone == "+1 555-000-1111"
        assert ledger_message.content == {"text": {"body": "Table for two tonight?"}}
        ledger_contact = (await db_session.execute(select(WhatsAppContact))).scalar_one()
        assert ledger_contact.phone_number == "15551234567"
        assert ledger_contact.message_count == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_stored_once(self, db_session, session_factory, integration, tenant):
        first = await WebhookIngestionService(db_session).ingest(message_payload())
        second = await WebhookIngestionService(db_session).ingest(message_payload())

        assert first.messages_stored == 1
        assert second.messages_stored == 0
        assert second.duplicates == 1
        async with session_factory() as session:
            assert await InboxRepository(session).count_messages(tenant.id, "wamid.in1") == 1
            assert await WhatsAppLedgerRepository(session).count_messages(tenant.id, "wamid.in1") == 1
            contact = (await session.execute(select(Contact))).scalar_one()
            assert contact.unread_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_insert_counts_as_duplicate(self, db_session, session_factory, integration, tenant):
        await WebhookIngestionService(db_session).ingest(message_payload())
        service = WebhookIngestionService(db_session)
        # First pass misses the existing rows, as a racing delivery would
        service.inbox.get_message = AsyncMock(side_effect=[None, MagicMock()])
        service.ledger.get_message = AsyncMock(side_effect=[None, MagicMock()])

        summary = await service.ingest(message_payload())

        assert summary.duplicates == 1
        assert summary.messages_stored == 0
        assert summary.errors == 0
        async with session_factory() as session:
            assert await InboxRepository(session).count_messages(tenant.id, "wamid.in1") == 1
            contact = (await session.execute(select(Contact))).scalar_one()
            assert contact.unread_count == 1

    @pytest.mark.asyncio
    async def test_unknown_phone_number_id_is_skipped(self, db_session, integration):
        summary = await WebhookIngestionService(db_session).ingest(message_payload(phone_number_id="PN-UNKNOWN"))

        assert summary.skipped == 1
        assert summary.messages_stored == 0
        assert await _count(db_session, Message) == 0
        assert await _count(db_session, WhatsAppMessage) == 0
        assert await _count(db_session, Contact) == 0

    @pytest.mark.asyncio
    async def test_cache_hit_skips_work(self, db_session, integration):
        cache = MagicMock()
        cache.exists = AsyncMock(return_value=True)
        cache.set = AsyncMock()

        summary = await WebhookIngestionService(db_session, cache=cache).ingest(message_payload())

        assert summary.duplicates == 1
        assert await _count(db_session, Message) == 0
        cache.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stored_message_is_cached(self, db_session, integration, tenant):
        cache = MagicMock()
        cache.exists = AsyncMock(return_value=False)
        cache.set = AsyncMock(return_value=True)

        await WebhookIngestionService(db_session, cache=cache).ingest(message_payload())

        cache.set.assert_awaited_once_with(
            f"whatsapp:processed:{tenant.id}:wamid.in1", "1", ttl=settings.message_dedup_ttl_seconds
        )

    @pytest.mark.asyncio
    async def test_one_bad_event_does_not_stop_the_batch(self, db_session, integration, monkeypatch):
        payload = message_payload()
        second = dict(payload["entry"][0]["changes"][0]["value"]["messages"][0], id="wamid.in2")
        payload["entry"][0]["changes"][0]["value"]["messages"].append(second)
        calls = []
        original = WebhookIngestionService._write_message

        async def flaky_write(self, tenant_id, business_number, event):
            calls.append(event.message_id)
            if event.message_id == "wamid.in1":
                raise RuntimeError("boom")
            return await original(self, tenant_id, business_number, event)

        monkeypatch.setattr(WebhookIngestionService, "_write_message", flaky_write)

        summary = await WebhookIngestionService(db_session).ingest(payload)

        assert calls == ["wamid.in1", "wamid.in2"]
        assert summary.errors == 1
        assert summary.messages_stored == 1

    @pytest.mark.asyncio
    async def test_malformed_entry_does_not_drop_the_batch(self, db_session, session_factory, integration, tenant):
        summary = await WebhookIngestionService(db_session).ingest(malformed_batch())

        assert summary.messages_stored == 1
        async with session_factory() as session:
            stored = (await session.execute(select(Message.external_message_id))).scalars().all()
        assert stored == ["wamid.good"]


class TestStatusUpdates:
    @pytest.mark.asyncio
    async def test_status_moves_forward(self, db_session, session_factory, integration, tenant):
        await _sent_message(db_session, tenant.id, "wamid.out1")

        summary = await WebhookIngestionService(db_session).ingest(status_payload("wamid.out1", "read"))

        assert summary.statuses_applied == 1
        async with session_factory() as session:
            assert (await WhatsAppLedgerRepository(session).get_message(tenant.id, "wamid.out1")).status == "read"
            assert (await InboxRepository(session).get_message(tenant.id, "wamid.out1")).delivery_status == "read"

    @pytest.mark.asyncio
    async def test_late_status_does_not_downgrade(self, db_session, session_factory, integration, tenant):
        await _sent_message(db_session, tenant.id, "wamid.out1", status="read")
        service = WebhookIngestionService(db_session)

        delivered = await service.ingest(status_payload("wamid.out1", "delivered"))
        failed = await service.ingest(status_payload("wamid.out1", "failed"))

        assert delivered.statuses_ignored == 1
        assert failed.statuses_ignored == 1
        async with session_factory() as session:
            assert (await WhatsAppLedgerRepository(session).get_message(tenant.id, "wamid.out1")).status == "read"

    @pytest.mark.asyncio
    async def test_failed_status_keeps_errors(self, db_session, session_factory, integration, tenant):
        await _sent_message(db_session, tenant.id, "wamid.out1")
        payload = status_payload("wamid.out1", "failed")
        payload["entry"][0]["changes"][0]["value"]["statuses"][0]["errors"] = [
            {"code": 131026, "title": "Message undeliverable"}
        ]

        await WebhookIngestionService(db_session).ingest(payload)

        async with session_factory() as session:
            message = await WhatsAppLedgerRepository(session).get_message(tenant.id, "wamid.out1")
        assert message.status == "failed"
        assert message.message_metadata["errors"][0]["code"] == 131026

    @pytest.mark.asyncio
    async def test_status_without_known_number_uses_message_id(self, db_session, session_factory, integration, tenant):
        await _sent_message(db_session, tenant.id, "wamid.out1")

        summary = await WebhookIngestionService(db_session).ingest(
            status_payload("wamid.out1", "delivered", phone_number_id="PN-OLD")
        )

        assert summary.statuses_applied == 1

    @pytest.mark.asyncio
    async def test_status_for_unknown_message_is_ignored(self, db_session, integration):
        summary = await WebhookIngestionService(db_session).ingest(status_payload("wamid.nope", "delivered"))

        assert summary.statuses_ignored == 1
        assert summary.errors == 0
        assert await _count(db_session, WhatsAppMessage) == 0


class TestAccountAndTemplateEvents:
    @pytest.mark.asyncio
    async def test_template_status(self, db_session, tenant, integration):
        db_session.add(MessageTemplate(tenant_id=tenant.id, template_id="991", name="reservation", status="PENDING"))
        await db_session.commit()

        rejected = await WebhookIngestionService(db_session).ingest(change_payload(
            "message_template_status_update",
            {"event": "REJECTED", "message_template_id": 991, "reason": "INVALID_FORMAT"},
        ))
        template = (await db_session.execute(select(MessageTemplate))).scalar_one()
        assert rejected.templates_updated == 1
        assert template.status == "REJECTED"
        assert template.rejection_reason == "INVALID_FORMAT"

        await WebhookIngestionService(db_session).ingest(change_payload(
            "message_template_status_update",
            {"event": "APPROVED", "message_template_id": 991, "reason": "NONE"},
        ))
        await db_session.refresh(template)
        assert template.status == "APPROVED"
        assert template.rejection_reason is None

    @pytest.mark.asyncio
    async def test_unknown_template_is_ignored(self, db_session, integration):
        summary = await WebhookIngestionService(db_session).ingest(change_payload(
            "message_template_status_update", {"event": "APPROVED", "message_template_id": 5},
        ))

        assert summary.ignored == 1

    @pytest.mark.asyncio
    async def test_quality_update(self, db_session, tenant, integration):
        summary = await WebhookIngestionService(db_session).ingest(
            change_payload("phone_number_quality_update", {"event": "FLAGGED", "current_limit": "TIER_1K"})
        )

        assert summary.accounts_updated == 1
        stored = await IntegrationStateService(db_session).get(tenant.id)
        await db_session.refresh(stored)
        assert stored.quality_rating == "FLAGGED"
        assert stored.integration_metadata["account_events"]["phone_number_quality_update"]["current_limit"] == "TIER_1K"

    @pytest.mark.asyncio
    async def test_account_review(self, db_session, tenant, integration):
        await WebhookIngestionService(db_session).ingest(
            change_payload("account_review_update", {"decision": "APPROVED"})
        )

        stored = await IntegrationStateService(db_session).get(tenant.id)
        await db_session.refresh(stored)
        assert stored.account_status == "APPROVED"
