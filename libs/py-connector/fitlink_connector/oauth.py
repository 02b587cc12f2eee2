"""OAuth 2.0 utilities for authorization URLs, token exchange and refresh."""

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from .exceptions import InvalidProviderError, OAuthError
from .providers import get_provider_config
from .vendor_types import OAuthTokens, Provider, ProviderConfig

logger = logging.getLogger(__name__)

# Keys providers use to report the account id in the token response.
PROVIDER_USER_ID_KEYS = ("user_id", "userId", "x_user_id", "open_id", "athlete")


def generate_code_verifier() -> str:
    """PKCE code verifier (RFC 7636, 43+ chars from the unreserved set)."""
    return secrets.token_urlsafe(48)


def code_challenge_s256(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OAuthHandler:
    """
    Handles OAuth 2.0 authorization code flow and token management.

    Supports:
    - Authorization URL generation (with optional PKCE)
    - Code exchange for tokens
    - Token refresh
    - Token revocation
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        auth_url: str,
        token_url: str,
        revoke_url: str | None = None,
        scope_separator: str = " ",
        provider: str | None = None,
        timeout: float = 30.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_url = auth_url
        self.token_url = token_url
        self.revoke_url = revoke_url
        self.scope_separator = scope_separator
        self.provider = provider

        self.http_client = httpx.AsyncClient(timeout=timeout)

    @classmethod
    def for_provider(
        cls,
        provider: Provider | str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
    ) -> "OAuthHandler":
        """
        Build a handler from the provider registry.

        Raises:
            InvalidProviderError: If the provider does not link over OAuth
        """
        config: ProviderConfig = get_provider_config(provider)
        if not config.supports_oauth:
            raise InvalidProviderError(
                f"{config.name} requires the native app and cannot be linked over OAuth",
                provider=config.id.value,
            )
        return cls(
            client_id=client_id,
            client_secret=client_secret,
            auth_url=config.auth_url,
            token_url=config.token_url,
            revoke_url=config.revoke_url,
            scope_separator=config.scope_separator,
            provider=config.id.value,
            timeout=timeout,
        )

    def build_authorization_url(
        self,
        redirect_uri: str,
        scopes: list[str],
        state: str | None = None,
        code_verifier: str | None = None,
        **extra_params: Any,
    ) -> str:
        """
        Build OAuth authorization URL.

        Args:
            redirect_uri: Callback URL
            scopes: List of OAuth scopes
            state: Optional state parameter for CSRF protection
            code_verifier: PKCE verifier; adds an S256 challenge when given
            **extra_params: Additional provider-specific parameters

        Returns:
            Full authorization URL
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope_separator.join(scopes),
            **extra_params,
        }

        if state:
            params["state"] = state

        if code_verifier:
            params["code_challenge"] = code_challenge_s256(code_verifier)
            params["code_challenge_method"] = "S256"

        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
        **extra_params: Any,
    ) -> OAuthTokens:
        """
        Exchange authorization code for access token.

        Args:
            code: Authorization code from provider
            redirect_uri: Must match the one used in authorization
            code_verifier: PKCE verifier bound to the authorization request
            **extra_params: Additional provider-specific parameters

        Returns:
            OAuthTokens with access and refresh tokens

        Raises:
            OAuthError: If exchange fails
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **extra_params,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        return await self._token_request(data, "Token exchange")

    async def refresh_token(
        self,
        refresh_token: str,
        **extra_params: Any,
    ) -> OAuthTokens:
        """
        Refresh an expired access token.

        Args:
            refresh_token: Refresh token from previous exchange
            **extra_params: Additional provider-specific parameters

        Returns:
            OAuthTokens with new access token. Providers that do not rotate
            refresh tokens get the old one carried over.

        Raises:
            OAuthError: If refresh fails
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **extra_params,
        }

        tokens = await self._token_request(data, "Token refresh")
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def revoke_token(self, token: str, token_type: str = "access_token") -> bool:
        """
        Revoke an access or refresh token.

        Args:
            token: Token to revoke
            token_type: Type of token (access_token or refresh_token)

        Returns:
            True if revocation succeeded

        Raises:
            OAuthError: On network failure
        """
        if not self.revoke_url:
            # Some providers don't expose a revocation endpoint
            return True

        data = {
            "token": token,
            "token_type_hint": token_type,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        try:
            response = await self.http_client.post(
                self.revoke_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

            # RFC 7009: successful revocations return 200
            return response.status_code == 200

        except httpx.RequestError as e:
            raise OAuthError(
                f"Network error during token revocation: {e}", provider=self.provider
            ) from e

    async def _token_request(self, data: dict[str, Any], action: str) -> OAuthTokens:
        try:
            response = await self.http_client.post(
                self.token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.RequestError as e:
            raise OAuthError(
                f"Network error during {action.lower()}: {e}", provider=self.provider
            ) from e

        if response.status_code != 200:
            try:
                error_data = response.json() if response.text else {}
            except ValueError:
                error_data = {}
            error_msg = error_data.get("error_description") or error_data.get("error") or response.text
            logger.warning("%s failed for %s: HTTP %s", action, self.provider, response.status_code)
            raise OAuthError(f"{action} failed: {error_msg}", provider=self.provider)

        return self._parse_token_response(response.json())

    def _parse_token_response(self, data: dict[str, Any]) -> OAuthTokens:
        """
        Parse provider token response into OAuthTokens.

        Args:
            data: Token response from provider

        Returns:
            OAuthTokens object
        """
        access_token = data.get("access_token")
        if not access_token:
            raise OAuthError("Missing access_token in response", provider=self.provider)

        refresh_token = data.get("refresh_token")
        expires_in = int(data.get("expires_in", 3600))  # Default 1 hour

        # Strava also sends an absolute epoch
        if data.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc)
        else:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        # Scopes can be a list or a space/comma separated string
        scope = data.get("scope", "")
        if isinstance(scope, str):
            scopes = [s for s in scope.replace(",", " ").split(" ") if s]
        else:
            scopes = list(scope)

        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scopes=scopes,
            provider_user_id=self._parse_provider_user_id(data),
        )

    @staticmethod
    def _parse_provider_user_id(data: dict[str, Any]) -> str | None:
        for key in PROVIDER_USER_ID_KEYS:
            value = data.get(key)
            if isinstance(value, dict):
                value = value.get("id")
            if value is not None and value != "":
                return str(value)
        return None

    async def close(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def __aenter__(self) -> "OAuthHandler":
        """Context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Context manager exit."""
        await self.close()
