"""HTTP client for REST-only payment providers."""
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from tenant_billing.gateways.resilience import ProviderError, ProviderErrorType

logger = structlog.get_logger(__name__)


def _error_details(body: Any) -> Tuple[Optional[str], Optional[str]]:
    """Pull (code, message) out of a provider error body."""
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("code"), error.get("description") or error.get("message")
    if isinstance(error, str):
        return None, error
    return body.get("code"), body.get("message")


class ProviderHTTPClient:
    """
    Thin async JSON client over httpx.

    Transport and HTTP errors are classified into ProviderError so the
    adapter base can decide on retries and circuit breaking.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        timeout_seconds: float,
        auth: Optional[httpx.Auth | Tuple[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = provider
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            headers={"Content-Type": "application/json", **(headers or {})},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send a request and decode the JSON response.

        Raises:
            ProviderError: Classified transport or HTTP error
        """
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"{self.provider} request timed out", ProviderErrorType.TRANSIENT, e, "timeout"
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"{self.provider} connection error: {e}", ProviderErrorType.TRANSIENT, e
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            code, message = _error_details(body)
            message = message or f"{self.provider} returned HTTP {response.status_code}"
            if response.status_code == 429:
                error_type = ProviderErrorType.RATE_LIMIT
            elif response.status_code >= 500:
                error_type = ProviderErrorType.TRANSIENT
            else:
                error_type = ProviderErrorType.PERMANENT
            logger.warning(
                "provider_http_error",
                provider=self.provider,
                path=path,
                status_code=response.status_code,
                error_code=code,
            )
            raise ProviderError(message, error_type, code=code)

        if not isinstance(body, dict):
            raise ProviderError(
                f"{self.provider} returned a non-JSON response", ProviderErrorType.TRANSIENT
            )
        return body

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("POST", path, json=json)

    async def aclose(self) -> None:
        await self._client.aclose()
