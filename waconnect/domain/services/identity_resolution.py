"""Find or create the WhatsApp Business Account (WABA) for a tenant.

Discovery strategies run first, in a fixed order, and the first one that
returns an account wins. Only when all of them miss are the creation
strategies tried, again in a fixed order, stopping at the first success.
Every attempt is written to the integration log under the same step name
so runs are comparable.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.domain.services.audit_service import IntegrationAuditService
from waconnect.infrastructure.meta_graph_client import MetaGraphClient, MetaGraphError, get_graph_client
from waconnect.settings import settings

logger = logging.getLogger(__name__)

# Graph error returned when the app is already subscribed to the WABA
ALREADY_SUBSCRIBED_CODE = 100
ALREADY_SUBSCRIBED_SUBCODE = 2018001


class ResolutionState(str, Enum):
    UNRESOLVED = "unresolved"
    FOUND = "found"
    CREATING = "creating"
    FAILED = "failed"


@dataclass
class ResolutionContext:
    """Inputs shared by every strategy for one tenant."""

    tenant_id: int
    user_token: str
    business_id: str | None = None
    account_name: str | None = None
    _businesses: list[str] | None = field(default=None, init=False, repr=False)

    async def business_ids(self, graph: MetaGraphClient) -> list[str]:
        """Business groupings visible to the user, the known one first."""
        if self._businesses is None:
            ids = [self.business_id] if self.business_id else []
            try:
                for business in await graph.get_data(
                    "/me/businesses", access_token=self.user_token, params={"fields": "id,name"}
                ):
                    if business.get("id") and str(business["id"]) not in ids:
                        ids.append(str(business["id"]))
            except MetaGraphError as e:
                if not ids:
                    raise
                logger.warning(f"Could not list businesses, using known business id: {e}")
            self._businesses = ids
        return self._businesses

    async def primary_business_id(self, graph: MetaGraphClient) -> str | None:
        ids = await self.business_ids(graph)
        return ids[0] if ids else None


@dataclass
class StrategyResult:
    success: bool
    waba_id: str | None = None
    business_id: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResolutionOutcome:
    """Where resolution ended.

    FOUND: an existing account was discovered.
    CREATING: a creator succeeded; the account may not be discoverable yet.
    FAILED: every creator failed; the tenant awaits manual creation.
    """

    state: ResolutionState
    waba_id: str | None = None
    business_id: str | None = None
    strategy: str | None = None
    attempts: list[tuple[str, bool]] = field(default_factory=list)


class ResolutionStrategy(ABC):
    """One way of producing a WABA id."""

    name: str = ""
    step: str = ""

    @abstractmethod
    async def attempt(self, context: ResolutionContext, graph: MetaGraphClient) -> StrategyResult:
        """Try once. Raise MetaGraphError or return a failed result on miss."""


def _first_id(items: list[dict[str, Any]]) -> str | None:
    for item in items:
        if item.get("id"):
            return str(item["id"])
    return None


class WabaDiscoverer(ResolutionStrategy):
    step = "waba_discovery"


class MeWabaDiscoverer(WabaDiscoverer):
    """Accounts attached directly to the user."""

    name = "me_waba"

    async def attempt(self, context, graph):
        accounts = await graph.get_data(
            "/me/whatsapp_business_accounts",
            access_token=context.user_token,
            params={"fields": "id,name"},
        )
        waba_id = _first_id(accounts)
        if waba_id is None:
            return StrategyResult(success=False, error="No accounts on user")
        return StrategyResult(success=True, waba_id=waba_id, business_id=context.business_id)


class _BusinessEdgeDiscoverer(WabaDiscoverer):
    edge = ""

    async def attempt(self, context, graph):
        business_id = await context.primary_business_id(graph)
        if business_id is None:
            return StrategyResult(success=False, error="No business found for user")
        accounts = await graph.get_data(
            f"/{business_id}/{self.edge}",
            access_token=context.user_token,
            params={"fields": "id,name"},
        )
        waba_id = _first_id(accounts)
        if waba_id is None:
            return StrategyResult(
                success=False, business_id=business_id, error=f"No accounts on {self.edge}"
            )
        return StrategyResult(success=True, waba_id=waba_id, business_id=business_id)


class OwnedWabaDiscoverer(_BusinessEdgeDiscoverer):
    name = "owned_waba"
    edge = "owned_whatsapp_business_accounts"


class ClientWabaDiscoverer(_BusinessEdgeDiscoverer):
    name = "client_waba"
    edge = "client_whatsapp_business_accounts"


class PageConnectedWabaDiscoverer(WabaDiscoverer):
    """Accounts connected to one of the user's pages."""

    name = "page_connected_waba"

    async def attempt(self, context, graph):
        pages = await graph.get_data(
            "/me/accounts", access_token=context.user_token, params={"fields": "id,name"}
        )
        for page in pages:
            if not page.get("id"):
                continue
            try:
                data = await graph.get(
                    f"/{page['id']}",
                    access_token=context.user_token,
                    params={"fields": "connected_whatsapp_business_account"},
                )
            except MetaGraphError as e:
                logger.debug(f"Page lookup failed: {e}")
                continue
            connected = data.get("connected_whatsapp_business_account") or {}
            if connected.get("id"):
                return StrategyResult(
                    success=True,
                    waba_id=str(connected["id"]),
                    business_id=context.business_id,
                    details={"page_id": page["id"]},
                )
        return StrategyResult(success=False, error="No page has a connected account")


class WabaCreator(ResolutionStrategy):
    step = "waba_creation"

    def account_name(self, context: ResolutionContext) -> str:
        return context.account_name or f"{settings.app_name} - {context.tenant_id}"


class BspClientWabaCreator(WabaCreator):
    """BSP business creates a client account for the tenant's business."""

    name = "bsp_client_waba"

    async def attempt(self, context, graph):
        if not settings.meta_system_user_token or not settings.meta_bsp_business_id:
            return StrategyResult(success=False, error="BSP credentials are not configured")
        client_business_id = await context.primary_business_id(graph)
        if client_business_id is None:
            return StrategyResult(success=False, error="No client business id")
        data = await graph.post(
            f"/{settings.meta_bsp_business_id}/client_whatsapp_business_accounts",
            access_token=settings.meta_system_user_token,
            json={"name": self.account_name(context), "client_business_id": client_business_id},
        )
        return StrategyResult(
            success=True,
            waba_id=str(data["id"]) if data.get("id") else None,
            business_id=client_business_id,
            details={"bsp_business_id": settings.meta_bsp_business_id},
        )


class ClientBusinessWabaCreator(WabaCreator):
    """Account created on the tenant's business with the system-user token."""

    name = "client_business_waba"

    async def attempt(self, context, graph):
        if not settings.meta_system_user_token:
            return StrategyResult(success=False, error="META_SYSTEM_USER_TOKEN is not configured")
        client_business_id = await context.primary_business_id(graph)
        if client_business_id is None:
            return StrategyResult(success=False, error="No client business id")
        data = await graph.post(
            f"/{client_business_id}/whatsapp_business_accounts",
            access_token=settings.meta_system_user_token,
            json={"name": self.account_name(context)},
        )
        return StrategyResult(
            success=True,
            waba_id=str(data["id"]) if data.get("id") else None,
            business_id=client_business_id,
        )


class ClientWhatsAppApplicationCreator(WabaCreator):
    """Creation with the tenant's own token."""

    name = "client_whatsapp_application"

    async def attempt(self, context, graph):
        business_id = await context.primary_business_id(graph)
        if business_id is None:
            return StrategyResult(success=False, error="No business found for user")
        data = await graph.post(
            f"/{business_id}/client_whatsapp_applications",
            access_token=context.user_token,
            json={"name": self.account_name(context)},
        )
        return StrategyResult(
            success=True,
            waba_id=str(data["id"]) if data.get("id") else None,
            business_id=business_id,
        )


DEFAULT_DISCOVERERS: tuple[type[WabaDiscoverer], ...] = (
    MeWabaDiscoverer,
    OwnedWabaDiscoverer,
    ClientWabaDiscoverer,
    PageConnectedWabaDiscoverer,
)

DEFAULT_CREATORS: tuple[type[WabaCreator], ...] = (
    BspClientWabaCreator,
    ClientBusinessWabaCreator,
    ClientWhatsAppApplicationCreator,
)


class IdentityResolutionEngine:
    """Runs discoverers, then creators, logging each attempt."""

    def __init__(
        self,
        session: AsyncSession,
        graph: MetaGraphClient | None = None,
        discoverers: list[ResolutionStrategy] | None = None,
        creators: list[ResolutionStrategy] | None = None,
    ):
        self.graph = graph or get_graph_client()
        self.audit = IntegrationAuditService(session)
        self.discoverers = discoverers if discoverers is not None else [cls() for cls in DEFAULT_DISCOVERERS]
        self.creators = creators if creators is not None else [cls() for cls in DEFAULT_CREATORS]

    async def _run(self, strategy: ResolutionStrategy, context: ResolutionContext) -> StrategyResult:
        try:
            result = await strategy.attempt(context, self.graph)
        except MetaGraphError as e:
            result = StrategyResult(
                success=False,
                error=str(e),
                details={"status_code": e.status_code, "graph_code": e.code, "graph_subcode": e.subcode},
            )
        details = dict(result.details)
        if result.waba_id:
            details["waba_id"] = result.waba_id
        if result.business_id:
            details["business_id"] = result.business_id
        await self.audit.log_step(
            context.tenant_id,
            strategy.step,
            success=result.success,
            strategy=strategy.name,
            error_message=None if result.success else result.error,
            details=details,
        )
        return result

    async def discover(self, context: ResolutionContext) -> ResolutionOutcome:
        """Try each discoverer in order; first match wins."""
        outcome = ResolutionOutcome(state=ResolutionState.UNRESOLVED, business_id=context.business_id)
        for strategy in self.discoverers:
            result = await self._run(strategy, context)
            outcome.attempts.append((strategy.name, result.success))
            if result.business_id and not outcome.business_id:
                outcome.business_id = result.business_id
            if result.success and result.waba_id:
                outcome.state = ResolutionState.FOUND
                outcome.waba_id = result.waba_id
                outcome.business_id = result.business_id or outcome.business_id
                outcome.strategy = strategy.name
                return outcome
        return outcome

    async def create_via_intermediary(self, context: ResolutionContext) -> ResolutionOutcome:
        """Try each creator in order; stop at the first success."""
        outcome = ResolutionOutcome(state=ResolutionState.CREATING, business_id=context.business_id)
        for strategy in self.creators:
            result = await self._run(strategy, context)
            outcome.attempts.append((strategy.name, result.success))
            if result.success:
                outcome.waba_id = result.waba_id
                outcome.business_id = result.business_id or outcome.business_id
                outcome.strategy = strategy.name
                return outcome
        outcome.state = ResolutionState.FAILED
        return outcome

    async def resolve(self, context: ResolutionContext) -> ResolutionOutcome:
        """Discover, falling back to creation on a miss."""
        discovered = await self.discover(context)
        if discovered.state == ResolutionState.FOUND:
            return discovered
        if discovered.business_id and not context.business_id:
            context.business_id = discovered.business_id
        created = await self.create_via_intermediary(context)
        created.attempts = discovered.attempts + created.attempts
        return created

    async def find_waba_for_phone_number(self, context: ResolutionContext, phone_number_id: str) -> str | None:
        """Find which accessible account owns a phone number id."""
        accounts = await self.graph.get_data(
            "/me/whatsapp_business_accounts",
            access_token=context.user_token,
            params={"fields": "id,name"},
        )
        for business_id in await context.business_ids(self.graph):
            for edge in ("owned_whatsapp_business_accounts", "client_whatsapp_business_accounts"):
                try:
                    accounts.extend(
                        await self.graph.get_data(
                            f"/{business_id}/{edge}",
                            access_token=context.user_token,
                            params={"fields": "id,name"},
                        )
                    )
                except MetaGraphError as e:
                    logger.debug(f"Listing {edge} failed: {e}")

        seen: set[str] = set()
        for account in accounts:
            waba_id = str(account.get("id") or "")
            if not waba_id or waba_id in seen:
                continue
            seen.add(waba_id)
            numbers = await self.graph.get_data(
                f"/{waba_id}/phone_numbers",
                access_token=context.user_token,
                params={"fields": "id,display_phone_number"},
            )
            if any(str(n.get("id")) == str(phone_number_id) for n in numbers):
                return waba_id
        return None

    async def subscribe_app(self, tenant_id: int, waba_id: str, access_token: str) -> bool:
        """Subscribe the app to the account's webhooks. Already subscribed counts as success."""
        try:
            await self.graph.post(f"/{waba_id}/subscribed_apps", access_token=access_token)
            success, error = True, None
        except MetaGraphError as e:
            already = e.code == ALREADY_SUBSCRIBED_CODE and e.subcode == ALREADY_SUBSCRIBED_SUBCODE
            success, error = already, None if already else str(e)
        await self.audit.log_step(
            tenant_id,
            "subscribe_app",
            success=success,
            error_message=error,
            details={"waba_id": waba_id},
        )
        return success
