"""Exchange Meta authorization codes for access credentials."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.infrastructure.meta_graph_client import (
    MetaAuthError,
    MetaGraphClient,
    MetaGraphError,
    get_graph_client,
)
from waconnect.persistence.models.oauth_credential import OAuthCredential
from waconnect.persistence.repositories.oauth_credential_repository import OAuthCredentialRepository
from waconnect.settings import require_setting

logger = logging.getLogger(__name__)

# Granular scopes whose target ids name the tenant's business grouping
BUSINESS_SCOPES = ("business_management", "whatsapp_business_management")


@dataclass
class AccessCredential:
    access_token: str
    token_type: str = "bearer"
    expires_in: int | None = None
    long_lived: bool = False
    issued_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def expires_at(self) -> datetime | None:
        if not self.expires_in:
            return None
        return self.issued_at + timedelta(seconds=self.expires_in)


@dataclass
class TokenInfo:
    """Subset of /debug_token output."""

    scopes: list[str] = field(default_factory=list)
    business_id: str | None = None
    user_id: str | None = None
    expires_at: datetime | None = None


def _credential_from_response(data: dict, long_lived: bool = False) -> AccessCredential:
    token = data.get("access_token")
    if not token:
        raise MetaAuthError("Token response did not include an access_token")
    expires_in = data.get("expires_in")
    return AccessCredential(
        access_token=token,
        token_type=(data.get("token_type") or "bearer").lower(),
        expires_in=int(expires_in) if expires_in else None,
        long_lived=long_lived,
    )


class TokenExchangeService:
    """Code → short-lived token → long-lived token, plus credential storage."""

    def __init__(self, session: AsyncSession, graph: MetaGraphClient | None = None):
        self.session = session
        self.graph = graph or get_graph_client()
        self.credentials = OAuthCredentialRepository(session)

    async def exchange_authorization_code(self, code: str) -> AccessCredential:
        """Exchange the callback code for a short-lived user token.

        Raises:
            ConfigurationError: If app id, secret, or redirect URI is missing
            MetaAuthError: If Meta rejects the exchange
        """
        params = {
            "client_id": require_setting("meta_app_id"),
            "client_secret": require_setting("meta_app_secret"),
            "redirect_uri": require_setting("meta_oauth_redirect_uri"),
            "code": code,
        }
        data = await self.graph.request(
            "GET", "/oauth/access_token", params=params, error_class=MetaAuthError
        )
        return _credential_from_response(data)

    async def upgrade_to_long_lived(self, credential: AccessCredential) -> AccessCredential:
        """Swap a short-lived token for a long-lived one.

        Falls back to the given credential when Meta refuses.
        """
        try:
            data = await self.graph.get(
                "/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": require_setting("meta_app_id"),
                    "client_secret": require_setting("meta_app_secret"),
                    "fb_exchange_token": credential.access_token,
                },
            )
            return _credential_from_response(data, long_lived=True)
        except MetaGraphError as e:
            logger.warning(f"Long-lived token exchange failed, keeping short-lived token: {e}")
            return credential

    async def inspect_token(self, credential: AccessCredential) -> TokenInfo | None:
        """Read granted scopes and the business id from /debug_token (best effort)."""
        try:
            app_token = f"{require_setting('meta_app_id')}|{require_setting('meta_app_secret')}"
            body = await self.graph.get(
                "/debug_token",
                params={"input_token": credential.access_token, "access_token": app_token},
            )
        except MetaGraphError as e:
            logger.warning(f"Token introspection failed: {e}")
            return None

        data = body.get("data") or {}
        info = TokenInfo(
            scopes=[str(s) for s in data.get("scopes") or []],
            user_id=data.get("user_id"),
        )
        if data.get("expires_at"):
            info.expires_at = datetime.utcfromtimestamp(int(data["expires_at"]))
        for granular in data.get("granular_scopes") or []:
            if granular.get("scope") in BUSINESS_SCOPES and granular.get("target_ids"):
                info.business_id = str(granular["target_ids"][0])
                break
        return info

    async def find_duplicate(self, tenant_id: int, nonce: str) -> OAuthCredential | None:
        """Credential already stored for this callback's nonce, if any."""
        return await self.credentials.get_by_nonce(tenant_id, nonce)

    async def persist(
        self,
        tenant_id: int,
        nonce: str,
        credential: AccessCredential,
        token_info: TokenInfo | None = None,
    ) -> OAuthCredential:
        """Store a new active credential and deactivate the tenant's older ones.

        Flushes; a concurrent callback with the same nonce surfaces as an
        IntegrityError at flush or commit.
        """
        await self.credentials.deactivate_all(tenant_id)
        expires_at = credential.expires_at
        if expires_at is None and token_info is not None:
            expires_at = token_info.expires_at
        return await self.credentials.create(
            tenant_id,
            provider="meta",
            business_id=token_info.business_id if token_info else None,
            access_token=credential.access_token,
            token_type=credential.token_type,
            expires_at=expires_at,
            scopes=token_info.scopes if token_info else [],
            is_active=True,
            nonce=nonce,
        )
