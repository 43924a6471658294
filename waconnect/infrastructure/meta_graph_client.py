"""Meta Graph API client for WhatsApp Business endpoints."""

import logging
from typing import Any

import httpx

from waconnect.settings import settings

logger = logging.getLogger(__name__)


class MetaGraphError(Exception):
    """Raised when a Graph API call fails.

    Network failures carry ``status_code=None``.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: int | None = None,
        subcode: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.payload = payload or {}

    @property
    def is_retryable(self) -> bool:
        """Network errors, throttling, and upstream 5xx are worth retrying."""
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        if self.subcode is not None:
            parts.append(f"subcode={self.subcode}")
        return " ".join(parts)


class MetaAuthError(MetaGraphError):
    """Raised when exchanging an authorization code fails."""


def _error_from_response(response: httpx.Response) -> MetaGraphError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    return MetaGraphError(
        error.get("message") or f"Graph API request failed ({response.status_code})",
        status_code=response.status_code,
        code=error.get("code"),
        subcode=error.get("error_subcode"),
        payload=error,
    )


class MetaGraphClient:
    """Thin async wrapper over the versioned Graph API.

    Each call takes the access token it should run under, since onboarding
    mixes the tenant's user token with the BSP system-user token.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Versioned Graph URL, defaults to settings.meta_graph_url
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or settings.meta_graph_url).rstrip("/")
        self.timeout = timeout or settings.meta_http_timeout_seconds
        self._transport = transport

    def _get_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        error_class: type[MetaGraphError] = MetaGraphError,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            MetaGraphError: On network failure or a non-2xx response
        """
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        url = path if path.startswith("/") else f"/{path}"

        try:
            async with self._get_client() as client:
                response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                "Graph API network error",
                extra={"graph_path": url, "method": method, "error": str(e)},
            )
            raise error_class(f"Graph API network error: {e}") from e

        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.warning(
                "Graph API error",
                extra={
                    "graph_path": url,
                    "method": method,
                    "status_code": error.status_code,
                    "graph_code": error.code,
                    "graph_subcode": error.subcode,
                },
            )
            if error_class is not MetaGraphError:
                raise error_class(
                    error.message,
                    status_code=error.status_code,
                    code=error.code,
                    subcode=error.subcode,
                    payload=error.payload,
                )
            raise error

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    async def get(
        self,
        path: str,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self.request("GET", path, access_token=access_token, params=params)

    async def post(
        self,
        path: str,
        access_token: str | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self.request("POST", path, access_token=access_token, params=params, json=json)

    async def get_data(
        self,
        path: str,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """GET an edge and return its ``data`` list (empty when absent)."""
        body = await self.get(path, access_token=access_token, params=params)
        data = body.get("data")
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []


_graph_client: MetaGraphClient | None = None


def get_graph_client() -> MetaGraphClient:
    """Shared client for the process; FastAPI dependency."""
    global _graph_client
    if _graph_client is None:
        _graph_client = MetaGraphClient()
    return _graph_client
