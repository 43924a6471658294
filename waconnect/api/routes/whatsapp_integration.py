"""Tenant-facing WhatsApp integration endpoints."""

import logging
from datetime import datetime
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.api.deps import get_current_tenant, get_provisioning_runner
from waconnect.api.routes.whatsapp_oauth import OnboardingResponse, to_onboarding_response
from waconnect.domain.services.integration_state import (
    IntegrationNotFoundError,
    IntegrationStateService,
    InvalidStateError,
)
from waconnect.domain.services.onboarding_service import OnboardingService
from waconnect.domain.services.outbound_messages import OutboundMessageService
from waconnect.domain.services.phone_registry import (
    PhoneRegistry,
    VerificationRejectedError,
    VerificationUnavailableError,
)
from waconnect.domain.services.provisioning_poller import ProvisioningJobRunner
from waconnect.infrastructure.meta_graph_client import MetaGraphClient, MetaGraphError, get_graph_client
from waconnect.persistence.database import get_db
from waconnect.persistence.models.provisioning_job import ProvisioningJob
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus
from waconnect.persistence.repositories.integration_log_repository import IntegrationLogRepository
from waconnect.persistence.repositories.ledger_repository import WhatsAppLedgerRepository
from waconnect.persistence.repositories.provisioning_job_repository import ProvisioningJobRepository
from waconnect.settings import ConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response Models

class PhoneNumberResponse(BaseModel):
    id: str
    display_phone_number: str
    verified: bool
    verified_name: str | None = None
    status: str | None = None
    quality_rating: str | None = None


class ProvisioningJobResponse(BaseModel):
    id: int
    status: str
    attempts_used: int
    max_attempts: int
    waba_id: str | None
    error_message: str | None
    started_at: datetime
    finished_at: datetime | None


class IntegrationStatusResponse(BaseModel):
    connected: bool
    status: str
    waba_id: str | None = None
    business_id: str | None = None
    phone_number_id: str | None = None
    display_phone_number: str | None = None
    resolution_strategy: str | None = None
    quality_rating: str | None = None
    phone_numbers: list[PhoneNumberResponse] = []
    phone_numbers_source: str = "none"
    provisioning_job: ProvisioningJobResponse | None = None


class DisconnectResponse(BaseModel):
    status: str
    removed: bool


class ClaimPhoneRequest(BaseModel):
    country_code: str = Field(min_length=1, max_length=4)
    phone_number: str = Field(min_length=4, max_length=20)
    method: Literal["SMS", "VOICE"] = "SMS"
    verified_name: str | None = None
    language: str = "en_US"


class ClaimPhoneResponse(BaseModel):
    phone_number_id: str
    display_phone_number: str
    status: str
    code_sent: bool


class VerifyPhoneRequest(BaseModel):
    code: str = Field(min_length=4, max_length=10)
    phone_number_id: str | None = None


class LinkPhoneRequest(BaseModel):
    phone_number_id: str = Field(min_length=1)
    display_phone_number: str | None = None


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=4)
    message_type: Literal["text", "template"] = "text"
    body: str | None = None
    template_name: str | None = None
    language: str = "en_US"
    parameters: list[dict[str, Any]] | None = None


class SendMessageResponse(BaseModel):
    message_id: str
    conversation_id: str
    to: str
    status: str


class LedgerMessageResponse(BaseModel):
    id: int
    message_id: str
    conversation_id: str
    direction: str
    from_phone: str | None
    to_phone: str | None
    message_type: str
    content: dict[str, Any] | None
    status: str
    created_at: datetime


class LedgerContactResponse(BaseModel):
    id: int
    phone_number: str
    name: str | None
    status: str
    message_count: int
    last_message_at: datetime | None


class IntegrationLogResponse(BaseModel):
    id: int
    step: str
    strategy: str | None
    success: bool
    error_message: str | None
    details: dict[str, Any] | None
    created_at: datetime


def _job_response(job: ProvisioningJob | None) -> ProvisioningJobResponse | None:
    if job is None:
        return None
    return ProvisioningJobResponse(
        id=job.id,
        status=job.status,
        attempts_used=job.attempts_used,
        max_attempts=job.max_attempts,
        waba_id=job.waba_id,
        error_message=job.error_message,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


def _http_error(e: Exception) -> HTTPException:
    """Map domain errors onto HTTP responses."""
    if isinstance(e, IntegrationNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (InvalidStateError, VerificationRejectedError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, (ConfigurationError, VerificationUnavailableError)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, MetaGraphError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Meta Graph API error: {e.message}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


# Endpoints

@router.get("/status", response_model=IntegrationStatusResponse)
async def get_status(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
) -> IntegrationStatusResponse:
    """Connection status with live-or-cached phone numbers.

    Never fails: any internal error is reported as not connected.
    """
    try:
        integration = await IntegrationStateService(db).get(tenant_id)
        if integration is None:
            return IntegrationStatusResponse(connected=False, status=ConnectionStatus.DISCONNECTED.value)

        read = await PhoneRegistry(db, graph).read_phone_numbers(integration)
        job = await ProvisioningJobRepository(db).get_latest(tenant_id)
        return IntegrationStatusResponse(
            connected=integration.connection_status == ConnectionStatus.ACTIVE.value,
            status=integration.connection_status,
            waba_id=integration.waba_id,
            business_id=integration.business_id,
            phone_number_id=integration.phone_number_id,
            display_phone_number=integration.display_phone_number,
            resolution_strategy=integration.resolution_strategy,
            quality_rating=integration.quality_rating,
            phone_numbers=[PhoneNumberResponse(**n.to_dict()) for n in read.numbers],
            phone_numbers_source=read.source,
            provisioning_job=_job_response(job),
        )
    except Exception:
        logger.exception("Failed to read WhatsApp integration status")
        return IntegrationStatusResponse(connected=False, status=ConnectionStatus.DISCONNECTED.value)


@router.delete("/integration", response_model=DisconnectResponse)
async def disconnect(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    runner: Annotated[ProvisioningJobRunner, Depends(get_provisioning_runner)],
) -> DisconnectResponse:
    """Tear down the tenant's credentials and integration state."""
    await runner.cancel(db, tenant_id)
    removed = await IntegrationStateService(db).disconnect(tenant_id)
    return DisconnectResponse(status=ConnectionStatus.DISCONNECTED.value, removed=removed)


@router.post("/refresh", response_model=OnboardingResponse)
async def refresh_resolution(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
    runner: Annotated[ProvisioningJobRunner, Depends(get_provisioning_runner)],
) -> OnboardingResponse:
    """Retry account discovery and creation."""
    try:
        result = await OnboardingService(db, graph=graph, runner=runner).retry_resolution(tenant_id)
    except (IntegrationNotFoundError, InvalidStateError, ConfigurationError, MetaGraphError) as e:
        raise _http_error(e)
    return to_onboarding_response(result)


@router.get("/phone-numbers", response_model=list[PhoneNumberResponse])
async def list_phone_numbers(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
) -> list[PhoneNumberResponse]:
    try:
        integration = await IntegrationStateService(db).require(tenant_id)
    except IntegrationNotFoundError as e:
        raise _http_error(e)
    read = await PhoneRegistry(db, graph).read_phone_numbers(integration)
    return [PhoneNumberResponse(**n.to_dict()) for n in read.numbers]


@router.post("/phone-numbers/claim", response_model=ClaimPhoneResponse)
async def claim_phone_number(
    request: ClaimPhoneRequest,
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
) -> ClaimPhoneResponse:
    """Add a number to the account and send a verification code."""
    try:
        result = await PhoneRegistry(db, graph).claim(
            tenant_id,
            request.country_code,
            request.phone_number,
            method=request.method,
            verified_name=request.verified_name,
            language=request.language,
        )
    except (IntegrationNotFoundError, InvalidStateError, MetaGraphError) as e:
        raise _http_error(e)
    return ClaimPhoneResponse(
        phone_number_id=result.phone_number_id,
        display_phone_number=result.display_phone_number,
        status=result.status.value,
        code_sent=result.code_sent,
    )


@router.post("/phone-numbers/verify", response_model=IntegrationStatusResponse)
async def verify_phone_number(
    request: VerifyPhoneRequest,
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
) -> IntegrationStatusResponse:
    """Submit the verification code Meta sent to the number."""
    try:
        integration = await PhoneRegistry(db, graph).confirm_verification(
            tenant_id, request.code, phone_number_id=request.phone_number_id
        )
    except (
        IntegrationNotFoundError,
        InvalidStateError,
        VerificationRejectedError,
        VerificationUnavailableError,
    ) as e:
        raise _http_error(e)
    return IntegrationStatusResponse(
        connected=integration.connection_status == ConnectionStatus.ACTIVE.value,
        status=integration.connection_status,
        waba_id=integration.waba_id,
        business_id=integration.business_id,
        phone_number_id=integration.phone_number_id,
        display_phone_number=integration.display_phone_number,
        resolution_strategy=integration.resolution_strategy,
    )


@router.post("/phone-numbers/link", response_model=OnboardingResponse)
async def link_phone_number(
    request: LinkPhoneRequest,
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
) -> OnboardingResponse:
    """Link an existing phone number id directly."""
    try:
        result = await OnboardingService(db, graph=graph).link_phone_number(
            tenant_id, request.phone_number_id, request.display_phone_number
        )
    except (IntegrationNotFoundError, InvalidStateError, MetaGraphError) as e:
        raise _http_error(e)
    return to_onboarding_response(result)


@router.get("/provisioning-job", response_model=ProvisioningJobResponse)
async def get_provisioning_job(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ProvisioningJobResponse:
    job = await ProvisioningJobRepository(db).get_latest(tenant_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No provisioning job")
    return _job_response(job)


@router.post("/provisioning-job/cancel", response_model=ProvisioningJobResponse)
async def cancel_provisioning_job(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    runner: Annotated[ProvisioningJobRunner, Depends(get_provisioning_runner)],
) -> ProvisioningJobResponse:
    job = await runner.cancel(db, tenant_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No provisioning job")
    return _job_response(job)


@router.get("/messages", response_model=list[LedgerMessageResponse])
async def list_messages(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    phone: Annotated[str | None, Query(description="Counterpart number")] = None,
    skip: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[LedgerMessageResponse]:
    messages = await WhatsAppLedgerRepository(db).list_messages(tenant_id, phone=phone, skip=skip, limit=limit)
    return [
        LedgerMessageResponse(
            id=m.id,
            message_id=m.message_id,
            conversation_id=m.conversation_id,
            direction=m.direction,
            from_phone=m.from_phone,
            to_phone=m.to_phone,
            message_type=m.message_type,
            content=m.content,
            status=m.status,
            created_at=m.created_at,
        )
        for m in messages
    ]


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    graph: Annotated[MetaGraphClient, Depends(get_graph_client)],
) -> SendMessageResponse:
    """Send a text or template message from the tenant's primary number."""
    service = OutboundMessageService(db, graph)
    try:
        if request.message_type == "template":
            if not request.template_name:
                raise InvalidStateError("template_name is required for template messages")
            result = await service.send_template(
                tenant_id, request.to, request.template_name, request.language, request.parameters
            )
        else:
            if not request.body:
                raise InvalidStateError("body is required for text messages")
            result = await service.send_text(tenant_id, request.to, request.body)
    except (IntegrationNotFoundError, InvalidStateError, MetaGraphError) as e:
        raise _http_error(e)
    return SendMessageResponse(
        message_id=result.message_id,
        conversation_id=result.conversation_id,
        to=result.to,
        status=result.status,
    )


@router.get("/contacts", response_model=list[LedgerContactResponse])
async def list_contacts(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[LedgerContactResponse]:
    contacts = await WhatsAppLedgerRepository(db).list_contacts(tenant_id, skip=skip, limit=limit)
    return [
        LedgerContactResponse(
            id=c.id,
            phone_number=c.phone_number,
            name=c.name,
            status=c.status,
            message_count=c.message_count,
            last_message_at=c.last_message_at,
        )
        for c in contacts
    ]


@router.get("/logs", response_model=list[IntegrationLogResponse])
async def list_integration_logs(
    tenant_id: Annotated[int, Depends(get_current_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    step: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[IntegrationLogResponse]:
    """Onboarding step history, oldest first."""
    entries = await IntegrationLogRepository(db).list_for_tenant(tenant_id, step=step, limit=limit)
    return [
        IntegrationLogResponse(
            id=e.id,
            step=e.step,
            strategy=e.strategy,
            success=e.success,
            error_message=e.error_message,
            details=e.details,
            created_at=e.created_at,
        )
        for e in entries
    ]
