"""Meta WhatsApp Cloud API webhook endpoints."""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.domain.services.webhook_ingestion import (
    WebhookIngestionService,
    verify_handshake,
    verify_signature,
)
from waconnect.persistence.database import get_db
from waconnect.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """Subscription handshake: echo the challenge when the verify token matches."""
    echoed = verify_handshake(mode, verify_token, challenge)
    if echoed is None:
        logger.warning("WhatsApp webhook verification rejected", extra={"hub_mode": mode})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return PlainTextResponse(content=echoed)


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, str]:
    """Receive message, status, template, and account notifications.

    Always answers 200 so Meta does not retry; failures are logged.
    """
    try:
        raw_body = await request.body()

        if settings.meta_app_secret:
            signature = request.headers.get("X-Hub-Signature-256")
            if not verify_signature(raw_body, signature, settings.meta_app_secret):
                if settings.environment == "production":
                    logger.warning("Rejected WhatsApp webhook with invalid signature")
                    return {"status": "ignored"}
                logger.warning("WhatsApp webhook signature invalid; accepting outside production")

        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError:
            logger.warning("WhatsApp webhook body is not JSON")
            return {"status": "ignored"}

        summary = await WebhookIngestionService(db).ingest(payload)
        logger.info(
            "Processed WhatsApp webhook",
            extra={
                "messages_stored": summary.messages_stored,
                "duplicates": summary.duplicates,
                "statuses_applied": summary.statuses_applied,
                "errors": summary.errors,
            },
        )
    except Exception:
        logger.exception("Error handling WhatsApp webhook")

    return {"status": "ok"}
