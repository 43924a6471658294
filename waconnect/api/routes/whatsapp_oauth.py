"""Meta OAuth start and callback for WhatsApp onboarding."""

import html
import json
import logging
from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.api.deps import get_current_tenant, get_provisioning_runner
from waconnect.domain.services.onboarding_service import (
    InvalidOAuthStateError,
    OnboardingResult,
    OnboardingService,
    build_authorization_url,
)
from waconnect.domain.services.provisioning_poller import ProvisioningJobRunner
from waconnect.infrastructure.meta_graph_client import MetaAuthError, MetaGraphClient, MetaGraphError, get_graph_client
from waconnect.persistence.database import get_db
from waconnect.settings import ConfigurationError, settings

logger = logging.getLogger(__name__)

router = APIRouter()


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str


class OnboardingResponse(BaseModel):
    """Where onboarding stands after a callback, refresh, or manual link."""
    success: bool = True
    tenant_id: int
    status: str
    duplicate: bool = False
    waba_id: str | None = None
    business_id: str | None = None
    phone_number_id: str | None = None
    display_phone_number: str | None = None
    strategy: str | None = None
    provisioning_job_id: int | None = None
    retry_after_seconds: int | None = None
    phone_numbers: list[dict[str, Any]] = []


def to_onboarding_response(result: OnboardingResult) -> OnboardingResponse:
    data = asdict(result)
    data["status"] = result.status.value
    return OnboardingResponse(**data)


def _wants_html(request: Request, response_format: str | None) -> bool:
    if response_format:
        return response_format.lower() == "html"
    return "text/html" in request.headers.get("accept", "")


def _popup_page(payload: dict[str, Any]) -> str:
    """Page that reports to the opener window and closes itself."""
    message = json.dumps({"type": "whatsapp_oauth", **payload}).replace("</", "<\\/")
    title = "WhatsApp connected" if payload.get("success") else "WhatsApp connection failed"
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
<p>{html.escape(title)}. You can close this window.</p>
<script>
  if (window.opener) {{
    window.opener.postMessage({message}, {json.dumps(settings.frontend_url)});
  }}
  window.close();
</script>
</body>
</html>"""


def _respond(request: Request, response_format: str | None, payload: dict[str, Any], status_code: int = 200):
    if _wants_html(request, response_format):
        return HTMLResponse(content=_popup_page(payload), status_code=status_code)
    return JSONResponse(content=payload, status_code=status_code)


def _failure(request: Request, response_format: str | None, status_code: int, detail: str):
    return _respond(request, response_format, {"success": False, "detail": detail}, status_code)


@router.get("/start", response_model=OAuthStartResponse)
async def start_oauth(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
) -> OAuthStartResponse:
    """Build the Meta authorization URL for the current tenant."""
    try:
        url, state = build_authorization_url(tenant_id)
    except ConfigurationError as e:
        logger.error(f"WhatsApp OAuth not configured: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return OAuthStartResponse(authorization_url=url, state=state)


@router.get("/callback")
async def oauth_callback(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
    runner: Annotated[ProvisioningJobRunner, Depends(get_provisioning_runner)],
    code: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
    error: Annotated[str | None, Query()] = None,
    error_description: Annotated[str | None, Query()] = None,
    response_format: Annotated[str | None, Query(alias="format")] = None,
):
    """Handle Meta's OAuth redirect.

    Responds with JSON, or with a self-closing HTML page for popup flows
    (browser Accept header or ?format=html).
    """
    if error:
        logger.warning(f"OAuth error from Meta: {error}")
        return _failure(request, response_format, status.HTTP_400_BAD_REQUEST, error_description or error)
    if not code or not state:
        return _failure(request, response_format, status.HTTP_400_BAD_REQUEST, "Missing code or state")

    service = OnboardingService(db, graph=graph, runner=runner)
    try:
        result = await service.handle_callback(code, state)
    except InvalidOAuthStateError as e:
        logger.warning("OAuth callback with invalid state")
        return _failure(request, response_format, status.HTTP_400_BAD_REQUEST, str(e))
    except ConfigurationError as e:
        logger.error(f"WhatsApp OAuth not configured: {e}")
        return _failure(request, response_format, status.HTTP_503_SERVICE_UNAVAILABLE, str(e))
    except MetaAuthError as e:
        logger.error(f"Meta token exchange failed: {e}")
        return _failure(request, response_format, status.HTTP_502_BAD_GATEWAY, "Token exchange with Meta failed")
    except MetaGraphError as e:
        logger.error(f"Meta Graph error during onboarding: {e}")
        return _failure(request, response_format, status.HTTP_502_BAD_GATEWAY, "Meta Graph API request failed")

    payload = to_onboarding_response(result).model_dump()
    return _respond(request, response_format, payload)
