"""Phone numbers attached to a tenant's WhatsApp Business Account."""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.core.phone import digits_only, mask_phone_number
from waconnect.domain.services.audit_service import IntegrationAuditService
from waconnect.domain.services.integration_state import IntegrationStateService, InvalidStateError
from waconnect.infrastructure.meta_graph_client import MetaGraphClient, MetaGraphError, get_graph_client
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus, WhatsAppIntegration
from waconnect.persistence.repositories.oauth_credential_repository import OAuthCredentialRepository
from waconnect.persistence.repositories.tenant_repository import TenantRepository
from waconnect.settings import settings

logger = logging.getLogger(__name__)

PHONE_NUMBER_FIELDS = "id,display_phone_number,verified_name,status,quality_rating"
VERIFICATION_METHODS = ("SMS", "VOICE")

# Strong references so refresh tasks outlive the request that started them
_refresh_tasks: set[asyncio.Task] = set()


class VerificationRejectedError(Exception):
    """Meta rejected the verification code."""


class VerificationUnavailableError(Exception):
    """Meta could not check the code right now; the caller may retry."""


@dataclass
class PhoneNumber:
    id: str
    display_phone_number: str
    verified: bool
    verified_name: str | None = None
    status: str | None = None
    quality_rating: str | None = None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> "PhoneNumber":
        # A verified name is the only verification signal used
        return cls(
            id=str(data.get("id")),
            display_phone_number=data.get("display_phone_number") or "",
            verified=bool(data.get("verified_name")),
            verified_name=data.get("verified_name"),
            status=data.get("status"),
            quality_rating=data.get("quality_rating"),
        )

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> "PhoneNumber":
        return cls(
            id=str(data.get("id")),
            display_phone_number=data.get("display_phone_number") or "",
            verified=bool(data.get("verified")),
            verified_name=data.get("verified_name"),
            status=data.get("status"),
            quality_rating=data.get("quality_rating"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PhoneNumberRead:
    numbers: list[PhoneNumber]
    source: str  # live, cache, persisted, none


@dataclass
class ClaimResult:
    phone_number_id: str
    display_phone_number: str
    status: ConnectionStatus
    code_sent: bool


def select_primary(numbers: list[PhoneNumber]) -> PhoneNumber | None:
    """First verified number, if any."""
    for number in numbers:
        if number.verified:
            return number
    return None


def connection_status_for(numbers: list[PhoneNumber]) -> ConnectionStatus:
    return ConnectionStatus.ACTIVE if select_primary(numbers) else ConnectionStatus.UNCLAIMED


async def update_tenant_phone(session: AsyncSession, tenant_id: int, display_phone_number: str | None) -> None:
    """Mirror the primary WhatsApp number onto the tenant (failure is logged)."""
    if not display_phone_number:
        return
    try:
        updated = await TenantRepository(session).update_phone(tenant_id, display_phone_number)
        if not updated:
            logger.warning("Tenant not found while updating phone")
    except Exception as e:
        logger.warning(f"Failed to update tenant phone: {e}")


class PhoneRegistry:
    """List, claim, and verify WhatsApp phone numbers."""

    def __init__(self, session: AsyncSession, graph: MetaGraphClient | None = None):
        self.session = session
        self.graph = graph or get_graph_client()
        self.state = IntegrationStateService(session)
        self.audit = IntegrationAuditService(session)
        self.pending_refresh: asyncio.Task | None = None

    async def access_token_for(self, integration: WhatsAppIntegration) -> str | None:
        """Integration token, else the tenant's active credential, else the system token."""
        if integration.access_token:
            return integration.access_token
        credential = await OAuthCredentialRepository(self.session).get_active(integration.tenant_id)
        if credential is not None:
            return credential.access_token
        return settings.meta_system_user_token

    async def list_phone_numbers(self, waba_id: str, access_token: str) -> list[PhoneNumber]:
        """Live read from Meta.

        Raises:
            MetaGraphError: On upstream failure
        """
        data = await self.graph.get_data(
            f"/{waba_id}/phone_numbers",
            access_token=access_token,
            params={"fields": PHONE_NUMBER_FIELDS},
        )
        return [PhoneNumber.from_graph(item) for item in data if item.get("id")]

    async def read_phone_numbers(self, integration: WhatsAppIntegration) -> PhoneNumberRead:
        """Live list, else cached list, else the single persisted number.

        A successful live read refreshes the cache in the background.
        """
        token = await self.access_token_for(integration)
        if integration.waba_id and token:
            try:
                numbers = await self.list_phone_numbers(integration.waba_id, token)
                if numbers:
                    self.pending_refresh = asyncio.create_task(
                        self._refresh_cache(integration.tenant_id, numbers)
                    )
                    _refresh_tasks.add(self.pending_refresh)
                    self.pending_refresh.add_done_callback(_refresh_tasks.discard)
                    return PhoneNumberRead(numbers=numbers, source="live")
            except MetaGraphError as e:
                logger.warning(f"Live phone number read failed, using cache: {e}")

        cached = [PhoneNumber.from_cache(item) for item in integration.cached_phone_numbers]
        if cached:
            return PhoneNumberRead(numbers=cached, source="cache")

        if integration.phone_number_id:
            persisted = PhoneNumber(
                id=integration.phone_number_id,
                display_phone_number=integration.display_phone_number or "",
                verified=integration.connection_status == ConnectionStatus.ACTIVE.value,
            )
            return PhoneNumberRead(numbers=[persisted], source="persisted")

        return PhoneNumberRead(numbers=[], source="none")

    async def _refresh_cache(self, tenant_id: int, numbers: list[PhoneNumber]) -> None:
        # Own session: the request session may already be closed
        try:
            async with AsyncSession(self.session.bind, expire_on_commit=False) as session:
                await IntegrationStateService(session).cache_phone_numbers(
                    tenant_id, [n.to_dict() for n in numbers]
                )
                await session.commit()
        except Exception as e:
            logger.warning(f"Phone number cache refresh failed: {e}")

    async def claim(
        self,
        tenant_id: int,
        country_code: str,
        phone_number: str,
        method: str = "SMS",
        verified_name: str | None = None,
        language: str = "en_US",
    ) -> ClaimResult:
        """Attach a number to the account and send it a verification code. Commits.

        Raises:
            IntegrationNotFoundError: If the tenant has no integration
            InvalidStateError: If no account has been resolved yet
            MetaGraphError: If Meta rejects the number or the code request
        """
        integration = await self.state.require(tenant_id)
        if not integration.waba_id:
            raise InvalidStateError("WhatsApp Business Account has not been resolved yet")
        method = method.upper()
        if method not in VERIFICATION_METHODS:
            raise InvalidStateError(f"Unsupported verification method: {method}")

        token = await self.access_token_for(integration)
        cc = digits_only(country_code)
        number = digits_only(phone_number)
        display = f"+{cc}{number}"

        # Number may already be attached to the account
        try:
            existing = await self.list_phone_numbers(integration.waba_id, token)
        except MetaGraphError as e:
            logger.warning(f"Could not list phone numbers before claim: {e}")
            existing = []
        for candidate in existing:
            if digits_only(candidate.display_phone_number) == cc + number:
                status = ConnectionStatus.ACTIVE if candidate.verified else ConnectionStatus.VERIFYING
                await self.state.connect(
                    tenant_id,
                    phone_number_id=candidate.id,
                    display_phone_number=candidate.display_phone_number,
                    connection_status=status,
                )
                await self.audit.log_step(
                    tenant_id, "phone_claim", success=True,
                    details={"phone_number_id": candidate.id, "already_attached": True},
                )
                await self.session.commit()
                return ClaimResult(candidate.id, candidate.display_phone_number, status, code_sent=False)

        try:
            created = await self.graph.post(
                f"/{integration.waba_id}/phone_numbers",
                access_token=token,
                json={"cc": cc, "phone_number": number, "verified_name": verified_name or settings.app_name},
            )
            phone_number_id = str(created["id"])
            await self.graph.post(
                f"/{phone_number_id}/request_code",
                access_token=token,
                json={"code_method": method, "language": language},
            )
        except (MetaGraphError, KeyError) as e:
            await self.audit.log_step(
                tenant_id, "phone_claim", success=False, error_message=str(e),
                details={"phone": mask_phone_number(number), "method": method},
            )
            await self.session.commit()
            if isinstance(e, KeyError):
                raise MetaGraphError("Phone number creation returned no id") from e
            raise

        await self.state.connect(
            tenant_id,
            phone_number_id=phone_number_id,
            display_phone_number=display,
            connection_status=ConnectionStatus.VERIFYING,
        )
        await self.audit.log_step(
            tenant_id, "phone_claim", success=True,
            details={"phone_number_id": phone_number_id, "method": method},
        )
        await self.session.commit()
        logger.info("Verification code requested", extra={"phone": mask_phone_number(number), "method": method})
        return ClaimResult(phone_number_id, display, ConnectionStatus.VERIFYING, code_sent=True)

    async def confirm_verification(
        self,
        tenant_id: int,
        code: str,
        phone_number_id: str | None = None,
    ) -> WhatsAppIntegration:
        """Submit a verification code; on success the integration becomes active. Commits.

        Raises:
            IntegrationNotFoundError: If the tenant has no integration
            InvalidStateError: If no phone number is pending
            VerificationRejectedError: If Meta rejects the code
            VerificationUnavailableError: If Meta is temporarily unavailable
        """
        integration = await self.state.require(tenant_id)
        phone_number_id = phone_number_id or integration.phone_number_id
        if not phone_number_id:
            raise InvalidStateError("No phone number is awaiting verification")
        token = await self.access_token_for(integration)

        try:
            await self.graph.post(f"/{phone_number_id}/verify_code", access_token=token, json={"code": code})
        except MetaGraphError as e:
            await self.audit.log_step(
                tenant_id, "phone_verification", success=False, error_message=str(e),
                details={"phone_number_id": phone_number_id, "status_code": e.status_code},
            )
            await self.session.commit()
            if e.is_retryable:
                raise VerificationUnavailableError("Verification temporarily unavailable, retry later") from e
            raise VerificationRejectedError("Verification code rejected") from e

        await self.register(tenant_id, phone_number_id, token)

        metadata = dict(integration.integration_metadata or {})
        numbers = []
        for item in metadata.get("phone_numbers") or []:
            item = dict(item)
            if str(item.get("id")) == str(phone_number_id):
                item["verified"] = True
            numbers.append(item)
        if numbers:
            metadata["phone_numbers"] = numbers

        integration = await self.state.connect(
            tenant_id,
            phone_number_id=phone_number_id,
            connection_status=ConnectionStatus.ACTIVE,
            connected_at=datetime.utcnow(),
            integration_metadata=metadata,
        )
        await update_tenant_phone(self.session, tenant_id, integration.display_phone_number)
        await self.audit.log_step(
            tenant_id, "phone_verification", success=True, details={"phone_number_id": phone_number_id},
        )
        await self.session.commit()
        return integration

    async def register(self, tenant_id: int, phone_number_id: str, access_token: str | None) -> bool:
        """Register the number for Cloud API messaging with the configured PIN (best effort)."""
        try:
            await self.graph.post(
                f"/{phone_number_id}/register",
                access_token=access_token,
                json={"messaging_product": "whatsapp", "pin": settings.meta_phone_registration_pin},
            )
            success, error = True, None
        except MetaGraphError as e:
            success, error = False, str(e)
        await self.audit.log_step(
            tenant_id, "phone_registration", success=success, error_message=error,
            details={"phone_number_id": phone_number_id},
        )
        return success
