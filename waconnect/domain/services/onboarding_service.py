"""Connect a tenant to WhatsApp: OAuth callback through phone selection."""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.core import state_codec
from waconnect.domain.services.audit_service import IntegrationAuditService
from waconnect.domain.services.identity_resolution import (
    IdentityResolutionEngine,
    ResolutionContext,
    ResolutionOutcome,
    ResolutionState,
)
from waconnect.domain.services.integration_state import IntegrationStateService, InvalidStateError
from waconnect.domain.services.phone_registry import (
    PhoneNumber,
    PhoneRegistry,
    connection_status_for,
    select_primary,
    update_tenant_phone,
)
from waconnect.domain.services.provisioning_poller import ProvisioningJobRunner, provisioning_runner
from waconnect.domain.services.token_exchange import TokenExchangeService
from waconnect.infrastructure.meta_graph_client import MetaGraphClient, MetaGraphError, get_graph_client
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus
from waconnect.persistence.repositories.oauth_credential_repository import OAuthCredentialRepository
from waconnect.persistence.repositories.provisioning_job_repository import ProvisioningJobRepository
from waconnect.persistence.repositories.tenant_repository import TenantRepository
from waconnect.settings import require_setting, settings

logger = logging.getLogger(__name__)


class InvalidOAuthStateError(Exception):
    """The OAuth state parameter failed verification."""


@dataclass
class OnboardingResult:
    tenant_id: int
    status: ConnectionStatus
    duplicate: bool = False
    waba_id: str | None = None
    business_id: str | None = None
    phone_number_id: str | None = None
    display_phone_number: str | None = None
    strategy: str | None = None
    provisioning_job_id: int | None = None
    retry_after_seconds: int | None = None
    phone_numbers: list[dict[str, Any]] = field(default_factory=list)


def build_authorization_url(tenant_id: int) -> tuple[str, str]:
    """Meta OAuth dialog URL and the signed state it carries.

    Raises:
        ConfigurationError: If the app id, redirect URI, or signing secret is missing
    """
    state = state_codec.sign(state_codec.new_state(tenant_id))
    query = urlencode({
        "client_id": require_setting("meta_app_id"),
        "redirect_uri": require_setting("meta_oauth_redirect_uri"),
        "state": state,
        "scope": ",".join(settings.oauth_scope_list),
        "response_type": "code",
    })
    return f"{settings.meta_oauth_dialog_url}?{query}", state


class OnboardingService:
    """Drives token exchange, account resolution, provisioning, and phone selection."""

    def __init__(
        self,
        session: AsyncSession,
        graph: MetaGraphClient | None = None,
        runner: ProvisioningJobRunner | None = None,
    ):
        self.session = session
        self.graph = graph or get_graph_client()
        self.runner = runner or provisioning_runner
        self.tokens = TokenExchangeService(session, self.graph)
        self.engine = IdentityResolutionEngine(session, self.graph)
        self.phones = PhoneRegistry(session, self.graph)
        self.state = IntegrationStateService(session)
        self.audit = IntegrationAuditService(session)

    async def _current(self, tenant_id: int, duplicate: bool = False) -> OnboardingResult:
        integration = await self.state.get(tenant_id)
        if integration is None:
            return OnboardingResult(tenant_id=tenant_id, status=ConnectionStatus.PENDING, duplicate=duplicate)
        return OnboardingResult(
            tenant_id=tenant_id,
            status=ConnectionStatus(integration.connection_status),
            duplicate=duplicate,
            waba_id=integration.waba_id,
            business_id=integration.business_id,
            phone_number_id=integration.phone_number_id,
            display_phone_number=integration.display_phone_number,
            strategy=integration.resolution_strategy,
            phone_numbers=integration.cached_phone_numbers,
        )

    async def handle_callback(self, code: str, state: str) -> OnboardingResult:
        """Complete the OAuth redirect.

        Raises:
            InvalidOAuthStateError: If the state is tampered, malformed, or expired
            ConfigurationError: If Meta app settings are missing
            MetaAuthError: If the code exchange fails
        """
        signed = state_codec.verify(state)
        if signed is None:
            raise InvalidOAuthStateError("Invalid or expired OAuth state")
        tenant_id = signed.tenant_id

        if await self.tokens.find_duplicate(tenant_id, signed.nonce) is not None:
            logger.info("Duplicate OAuth callback ignored", extra={"nonce_seen": True})
            return await self._current(tenant_id, duplicate=True)

        try:
            short_lived = await self.tokens.exchange_authorization_code(code)
        except MetaGraphError as e:
            await self.audit.log_step(tenant_id, "token_exchange", success=False, error_message=str(e))
            await self.session.commit()
            raise
        credential = await self.tokens.upgrade_to_long_lived(short_lived)
        token_info = await self.tokens.inspect_token(credential)

        try:
            await self.tokens.persist(tenant_id, signed.nonce, credential, token_info)
            await self.audit.log_step(
                tenant_id,
                "token_exchange",
                success=True,
                details={
                    "long_lived": credential.long_lived,
                    "scopes": token_info.scopes if token_info else [],
                    "business_id": token_info.business_id if token_info else None,
                },
            )
            business_id = token_info.business_id if token_info else None
            await self.state.connect(
                tenant_id,
                access_token=credential.access_token,
                token_expires_at=credential.expires_at,
                connection_status=ConnectionStatus.PENDING,
                **({"business_id": business_id} if business_id else {}),
            )
            await self.session.commit()
        except IntegrityError:
            # Concurrent delivery of the same callback won the insert
            await self.session.rollback()
            logger.info("Duplicate OAuth callback lost insert race")
            return await self._current(tenant_id, duplicate=True)

        return await self.resolve(tenant_id, credential.access_token, business_id)

    async def resolve(self, tenant_id: int, access_token: str, business_id: str | None = None) -> OnboardingResult:
        """Discover or create the account and move the integration forward. Commits."""
        tenant = await TenantRepository(self.session).get_by_id(None, tenant_id)
        context = ResolutionContext(
            tenant_id=tenant_id,
            user_token=access_token,
            business_id=business_id,
            account_name=f"{settings.app_name} - {tenant.name}" if tenant else None,
        )
        outcome = await self.engine.resolve(context)

        if outcome.state == ResolutionState.FOUND:
            await self.session.commit()
            return await self.complete_connection(tenant_id, outcome, access_token)

        if outcome.state == ResolutionState.FAILED:
            await self.state.connect(
                tenant_id,
                connection_status=ConnectionStatus.AWAITING_WABA_CREATION,
                business_id=outcome.business_id,
            )
            await self.session.commit()
            logger.info("No WhatsApp account could be found or created; awaiting manual creation")
            result = await self._current(tenant_id)
            result.retry_after_seconds = settings.provisioning_retry_after_seconds
            return result

        # Created: wait in the background until discovery sees it
        await self.state.connect(
            tenant_id,
            connection_status=ConnectionStatus.PROVISIONING,
            business_id=outcome.business_id,
            waba_id=outcome.waba_id,
            resolution_strategy=outcome.strategy,
        )
        await self.session.commit()
        job = await self.runner.start(self.session, tenant_id, outcome.business_id, access_token)
        result = await self._current(tenant_id)
        result.provisioning_job_id = job.id
        return result

    async def complete_connection(
        self,
        tenant_id: int,
        outcome: ResolutionOutcome,
        access_token: str,
    ) -> OnboardingResult:
        """Subscribe the app, pick the primary number, and persist. Commits."""
        waba_id = outcome.waba_id
        await self.engine.subscribe_app(tenant_id, waba_id, access_token)

        try:
            numbers = await self.phones.list_phone_numbers(waba_id, access_token)
        except MetaGraphError as e:
            logger.warning(f"Phone number listing failed during connect: {e}")
            await self.audit.log_step(tenant_id, "phone_discovery", success=False, error_message=str(e))
            numbers = []
        else:
            await self.audit.log_step(
                tenant_id, "phone_discovery", success=True,
                details={"count": len(numbers), "verified": sum(1 for n in numbers if n.verified)},
            )

        primary = select_primary(numbers)
        chosen: PhoneNumber | None = primary or (numbers[0] if numbers else None)
        status = connection_status_for(numbers)

        fields: dict[str, Any] = {
            "waba_id": waba_id,
            "resolution_strategy": outcome.strategy,
            "connection_status": status,
            "phone_number_id": chosen.id if chosen else None,
            "display_phone_number": chosen.display_phone_number if chosen else None,
            "integration_metadata": {"phone_numbers": [n.to_dict() for n in numbers]},
        }
        if outcome.business_id:
            fields["business_id"] = outcome.business_id
        await self.state.connect(tenant_id, **fields)
        if status == ConnectionStatus.ACTIVE:
            await update_tenant_phone(self.session, tenant_id, primary.display_phone_number)

        await self.audit.log_step(
            tenant_id, "complete_flow", success=True, strategy=outcome.strategy,
            details={"waba_id": waba_id, "status": status.value},
        )
        await self.session.commit()
        return await self._current(tenant_id)

    async def retry_resolution(self, tenant_id: int) -> OnboardingResult:
        """Re-run discovery and creation for a tenant waiting on its account.

        Raises:
            IntegrationNotFoundError: If the tenant has no integration
            InvalidStateError: If there is no usable credential or a job is running
        """
        integration = await self.state.require(tenant_id)
        latest_job = await ProvisioningJobRepository(self.session).get_latest(tenant_id)
        if latest_job is not None and not latest_job.is_finished:
            if self.runner.is_live(latest_job):
                raise InvalidStateError("A provisioning job is already running")
            await self.runner.mark_stale(self.session, latest_job)
        token = integration.access_token
        if not token:
            credential = await OAuthCredentialRepository(self.session).get_active(tenant_id)
            token = credential.access_token if credential else None
        if not token:
            raise InvalidStateError("No Meta credential on file; reconnect the account")
        return await self.resolve(tenant_id, token, integration.business_id)

    async def link_phone_number(
        self,
        tenant_id: int,
        phone_number_id: str,
        display_phone_number: str | None = None,
    ) -> OnboardingResult:
        """Link a known phone number id by finding the account that owns it. Commits.

        Raises:
            IntegrationNotFoundError: If the tenant never authorized
            InvalidStateError: If no accessible account owns the number
        """
        integration = await self.state.require(tenant_id)
        token = integration.access_token
        if not token:
            credential = await OAuthCredentialRepository(self.session).get_active(tenant_id)
            token = credential.access_token if credential else None
        if not token:
            raise InvalidStateError("No Meta credential on file; reconnect the account")

        context = ResolutionContext(tenant_id=tenant_id, user_token=token, business_id=integration.business_id)
        waba_id = await self.engine.find_waba_for_phone_number(context, phone_number_id)
        if waba_id is None:
            await self.audit.log_step(
                tenant_id, "manual_link", success=False, strategy="manual",
                error_message="Phone number does not belong to an accessible account",
                details={"phone_number_id": phone_number_id},
            )
            await self.session.commit()
            raise InvalidStateError("Phone number does not belong to an accessible WhatsApp account")

        await self.engine.subscribe_app(tenant_id, waba_id, token)
        await self.state.connect(
            tenant_id,
            waba_id=waba_id,
            phone_number_id=phone_number_id,
            display_phone_number=display_phone_number or integration.display_phone_number,
            resolution_strategy="manual",
            connection_status=ConnectionStatus.ACTIVE,
        )
        await update_tenant_phone(self.session, tenant_id, display_phone_number)
        await self.audit.log_step(
            tenant_id, "manual_link", success=True, strategy="manual",
            details={"waba_id": waba_id, "phone_number_id": phone_number_id},
        )
        await self.session.commit()
        return await self._current(tenant_id)
