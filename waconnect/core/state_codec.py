"""Signed OAuth state carried through the Meta authorization redirect.

Token format: ``<base64url(json payload)>.<base64url(hmac-sha256)>``. The
payload is encoded with sorted keys and compact separators so the same
state always produces the same token.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import asdict, dataclass

from waconnect.settings import require_setting, settings


@dataclass(frozen=True)
class SignedState:
    """CSRF payload: which tenant started the flow, and when."""

    tenant_id: int
    nonce: str
    issued_at: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _signature(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), body.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def _secret() -> str:
    # Fall back to the app secret so a single Meta secret is enough in dev
    if settings.oauth_state_secret:
        return settings.oauth_state_secret
    return require_setting("meta_app_secret")


def new_state(tenant_id: int, now: int | None = None) -> SignedState:
    """Build a fresh state for a tenant with a random nonce."""
    issued_at = int(time.time()) if now is None else now
    return SignedState(tenant_id=tenant_id, nonce=secrets.token_urlsafe(16), issued_at=issued_at)


def sign(state: SignedState, secret: str | None = None) -> str:
    """Serialize and sign a state payload.

    Raises:
        ConfigurationError: If no signing secret is configured
    """
    key = secret or _secret()
    body = _b64encode(json.dumps(asdict(state), sort_keys=True, separators=(",", ":")).encode())
    return f"{body}.{_signature(body, key)}"


def verify(
    token: str | None,
    secret: str | None = None,
    now: int | None = None,
    max_age_seconds: int | None = None,
) -> SignedState | None:
    """Verify a signed token and return its payload.

    Returns None for any tampered, malformed, or expired token; never raises
    a parse error.

    Raises:
        ConfigurationError: If no signing secret is configured
    """
    if not token or not isinstance(token, str):
        return None
    key = secret or _secret()

    body, sep, signature = token.partition(".")
    if not sep or not body or not signature:
        return None

    try:
        if not hmac.compare_digest(_signature(body, key), signature):
            return None
        data = json.loads(_b64decode(body))
        state = SignedState(
            tenant_id=int(data["tenant_id"]),
            nonce=str(data["nonce"]),
            issued_at=int(data["issued_at"]),
        )
    except (ValueError, TypeError, KeyError, binascii.Error, UnicodeError):
        return None

    ttl = settings.oauth_state_ttl_seconds if max_age_seconds is None else max_age_seconds
    current = int(time.time()) if now is None else now
    if ttl and current - state.issued_at > ttl:
        return None
    return state
