"""Client for the remote "execute sync" endpoint."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

from fitlink_normalize.schema import HealthDataType

from .exceptions import (
    ProviderAuthError,
    SyncFailedError,
    SyncTimeoutError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

# Provider error codes meaning the stored credentials are no longer usable.
EXPIRED_TOKEN_CODES = frozenset({"token_expired", "expired_token"})
AUTH_ERROR_CODES = frozenset({"invalid_token", "invalid_grant", "unauthorized", "access_denied"})


class SyncRequest(BaseModel):
    """One device's sync job."""

    device_id: str
    user_id: str
    provider: str
    data_types: list[HealthDataType]
    since: datetime
    access_token: str


class SyncResponse(BaseModel):
    """
    Raw provider payloads keyed by data type.

    ``errors`` holds per-data-type failures for a partially successful sync.
    """

    data: dict[HealthDataType, Any] = Field(default_factory=dict)
    records_fetched: int | None = None
    errors: dict[str, str] = Field(default_factory=dict)


class SyncClient(ABC):
    """Executes a sync against a provider, returning raw payloads."""

    @abstractmethod
    async def execute_sync(self, request: SyncRequest) -> SyncResponse:
        """
        Raises:
            ProviderAuthError: Credentials rejected (TokenExpiredError if expired)
            SyncTimeoutError: The call timed out
            SyncFailedError: Any other failure
        """

    async def close(self) -> None:
        return None


def classify_error(
    provider: str,
    status_code: int | None,
    code: str | None,
    message: str,
) -> ProviderAuthError | SyncFailedError:
    """Map a structured provider error to the matching exception."""
    normalized = (code or "").lower()
    if normalized in EXPIRED_TOKEN_CODES:
        return TokenExpiredError(message, provider=provider, provider_code=code)
    if status_code in (401, 403) or normalized in AUTH_ERROR_CODES:
        return ProviderAuthError(message, provider=provider, provider_code=code)
    return SyncFailedError(message, provider=provider, provider_code=code, status_code=status_code)


class HttpSyncClient(SyncClient):
    """
    Calls ``POST {base_url}/sync``.

    Request body is the SyncRequest as JSON. Errors come back as
    ``{"error": {"code": ..., "message": ...}}`` or ``{"error": "...", "code": ...}``.
    """

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.http_client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def execute_sync(self, request: SyncRequest) -> SyncResponse:
        try:
            response = await self.http_client.post(
                f"{self.base_url}/sync",
                content=request.model_dump_json(),
            )
        except httpx.TimeoutException as e:
            raise SyncTimeoutError(
                f"Sync request timed out for device {request.device_id}",
                provider=request.provider,
            ) from e
        except httpx.RequestError as e:
            raise SyncFailedError(
                f"Network error during sync: {e}",
                provider=request.provider,
                provider_code="network_error",
            ) from e

        if response.status_code >= 400:
            code, message = self._parse_error(response)
            logger.error(
                "Sync for device %s failed: HTTP %s %s",
                request.device_id, response.status_code, code,
            )
            raise classify_error(request.provider, response.status_code, code, message)

        try:
            return SyncResponse.model_validate(response.json())
        except ValueError as e:
            raise SyncFailedError(
                f"Malformed sync response: {e}",
                provider=request.provider,
                provider_code="invalid_response",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _parse_error(response: httpx.Response) -> tuple[str | None, str]:
        try:
            body = response.json() if response.text else {}
        except ValueError:
            return None, response.text or f"HTTP {response.status_code}"

        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("code"), error.get("message") or f"HTTP {response.status_code}"
        if isinstance(error, str):
            return body.get("code"), error
        return None, response.text or f"HTTP {response.status_code}"

    async def close(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def __aenter__(self) -> "HttpSyncClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
