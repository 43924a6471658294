"""Typed WhatsApp webhook events.

Meta delivers ``{"object": ..., "entry": [{"id": <waba id>, "changes":
[{"field": ..., "value": {...}}]}]}``. Payloads are parsed here once into
a closed set of event variants; unknown fields and malformed items are
logged and dropped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

logger = logging.getLogger(__name__)

MEDIA_MESSAGE_TYPES = frozenset({"image", "video", "audio", "document"})

ACCOUNT_FIELDS = frozenset({
    "account_update",
    "account_review_update",
    "phone_number_quality_update",
    "phone_number_name_update",
})


def _parse_timestamp(value: Any) -> datetime | None:
    """Meta timestamps are unix seconds as strings."""
    if value in (None, ""):
        return None
    try:
        return datetime.utcfromtimestamp(int(value))
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def message_content(message: dict[str, Any]) -> dict[str, Any]:
    """Structured content stored on the raw ledger row."""
    message_type = message.get("type")
    if message_type == "text":
        return {"text": {"body": (message.get("text") or {}).get("body")}}
    if message_type in MEDIA_MESSAGE_TYPES:
        return {"media": message.get(message_type)}
    value = message.get(message_type) if message_type else None
    return value if isinstance(value, dict) else {}


def message_preview(message_type: str, content: dict[str, Any]) -> str:
    """Plain-text body for the unified inbox."""
    if message_type == "text":
        return (content.get("text") or {}).get("body") or ""
    media = content.get("media")
    if isinstance(media, dict) and media.get("caption"):
        return media["caption"]
    return f"[{message_type} message]"


@dataclass
class MessageEvent:
    """Inbound message from a counterpart to the tenant's number."""

    phone_number_id: str
    message_id: str
    from_phone: str
    message_type: str
    content: dict[str, Any]
    display_phone_number: str | None = None
    contact_name: str | None = None
    timestamp: datetime | None = None
    context_message_id: str | None = None

    @property
    def preview(self) -> str:
        return message_preview(self.message_type, self.content)


@dataclass
class StatusEvent:
    """Delivery status for a message the tenant sent."""

    message_id: str
    status: str
    phone_number_id: str | None = None
    recipient_id: str | None = None
    timestamp: datetime | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class TemplateStatusEvent:
    waba_id: str | None
    template_id: str
    event: str
    template_name: str | None = None
    language: str | None = None
    reason: str | None = None


@dataclass
class AccountEvent:
    waba_id: str | None
    field: str
    event: str | None
    details: dict[str, Any] = field(default_factory=dict)


WebhookEvent = Union[MessageEvent, StatusEvent, TemplateStatusEvent, AccountEvent]


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _parse_messages(value: dict[str, Any]) -> list[MessageEvent]:
    metadata = _as_dict(value.get("metadata"))
    phone_number_id = metadata.get("phone_number_id") or _as_dict(metadata.get("phone_number")).get("id")
    contacts = [c for c in _as_list(value.get("contacts")) if isinstance(c, dict)]
    names = {c.get("wa_id"): _as_dict(c.get("profile")).get("name") for c in contacts}
    fallback_name = _as_dict(contacts[0].get("profile")).get("name") if contacts else None

    events = []
    for message in _as_list(value.get("messages")):
        if not isinstance(message, dict):
            continue
        message_id = message.get("id")
        from_phone = message.get("from")
        if not message_id or not from_phone or not phone_number_id:
            logger.warning(
                "Dropping WhatsApp message with missing identifiers",
                extra={"has_message_id": bool(message_id), "has_phone_number_id": bool(phone_number_id)},
            )
            continue
        message_type = message.get("type") or "unknown"
        context = message.get("context") if isinstance(message.get("context"), dict) else {}
        events.append(
            MessageEvent(
                phone_number_id=str(phone_number_id),
                message_id=str(message_id),
                from_phone=str(from_phone),
                message_type=message_type,
                content=message_content(message),
                display_phone_number=metadata.get("display_phone_number"),
                contact_name=names.get(from_phone) or fallback_name,
                timestamp=_parse_timestamp(message.get("timestamp")),
                context_message_id=context.get("id"),
            )
        )
    return events


def _parse_statuses(value: dict[str, Any]) -> list[StatusEvent]:
    metadata = _as_dict(value.get("metadata"))
    events = []
    for status in _as_list(value.get("statuses")):
        if not isinstance(status, dict) or not status.get("id") or not status.get("status"):
            continue
        events.append(
            StatusEvent(
                message_id=str(status["id"]),
                status=str(status["status"]).lower(),
                phone_number_id=metadata.get("phone_number_id"),
                recipient_id=status.get("recipient_id"),
                timestamp=_parse_timestamp(status.get("timestamp")),
                errors=[e for e in _as_list(status.get("errors")) if isinstance(e, dict)],
            )
        )
    return events


def _parse_change(waba_id: str | None, change: dict[str, Any]) -> list[WebhookEvent]:
    field_name = change.get("field")
    value = change.get("value")
    if not isinstance(value, dict):
        return []

    if field_name == "messages":
        events: list[WebhookEvent] = []
        events.extend(_parse_messages(value))
        events.extend(_parse_statuses(value))
        return events

    if field_name == "message_template_status_update":
        template_id = value.get("message_template_id")
        if template_id is None:
            return []
        return [
            TemplateStatusEvent(
                waba_id=waba_id,
                template_id=str(template_id),
                event=str(value.get("event") or "").upper(),
                template_name=value.get("message_template_name"),
                language=value.get("message_template_language"),
                reason=value.get("reason"),
            )
        ]

    if field_name in ACCOUNT_FIELDS:
        event = value.get("event") or value.get("decision")
        return [AccountEvent(waba_id=waba_id, field=field_name, event=event, details=value)]

    logger.info("Ignoring unsupported WhatsApp webhook field", extra={"field": field_name})
    return []


def parse_webhook_payload(payload: Any) -> list[WebhookEvent]:
    """Flatten a webhook body into typed events, in delivery order."""
    if not isinstance(payload, dict):
        logger.warning("WhatsApp webhook body is not an object")
        return []

    events: list[WebhookEvent] = []
    for entry in _as_list(payload.get("entry")):
        if not isinstance(entry, dict):
            continue
        waba_id = str(entry["id"]) if entry.get("id") is not None else None
        for change in _as_list(entry.get("changes")):
            if not isinstance(change, dict):
                continue
            try:
                events.extend(_parse_change(waba_id, change))
            except Exception:
                # One malformed change is dropped, the rest of the batch still parses
                logger.warning(
                    "Dropping unparseable WhatsApp webhook change",
                    extra={"field": change.get("field"), "waba_id": waba_id},
                    exc_info=True,
                )
    return events
