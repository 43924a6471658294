"""FastAPI dependencies for auth and tenant resolution."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from waconnect.core.auth import decode_access_token
from waconnect.core.tenant_context import set_tenant_context
from waconnect.domain.services.provisioning_poller import ProvisioningJobRunner, provisioning_runner

security = HTTPBearer()


async def get_current_tenant(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> int:
    """Tenant id from the bearer token's tenant_id claim.

    Raises:
        HTTPException: If the token is invalid or has no tenant
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        tenant_id = int(payload.get("tenant_id"))
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    set_tenant_context(tenant_id)
    return tenant_id


def get_provisioning_runner() -> ProvisioningJobRunner:
    return provisioning_runner
