"""Runtime settings, read from the environment."""

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

from .vendor_types import Provider


def _flag(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class ProviderCredentials(BaseModel):
    """OAuth client registration for one provider."""

    client_id: str
    client_secret: str


class Settings(BaseModel):
    """Connector configuration."""

    local_mode: bool = False
    dynamodb_table: str = "fitlink"
    aws_region: str = "us-east-1"
    dynamodb_endpoint_url: str | None = None
    kms_key_id: str | None = None
    token_encryption_key: str | None = None
    sync_endpoint_url: str = "http://localhost:8001"
    sync_api_key: str | None = None
    sync_timeout_seconds: float = Field(5.0, gt=0)
    stale_sync_minutes: int = Field(10, gt=0)
    auth_flow_ttl_minutes: int = Field(10, gt=0, le=60)
    oauth_redirect_uri: str = "http://localhost:8000/v1/oauth/callback"
    log_level: str = "INFO"
    providers: dict[Provider, ProviderCredentials] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Provider clients are read from ``{PROVIDER}_CLIENT_ID`` and
        ``{PROVIDER}_CLIENT_SECRET`` (e.g. ``STRAVA_CLIENT_ID``).
        """
        env = os.environ if environ is None else environ

        providers = {}
        for provider in Provider:
            prefix = provider.value.upper()
            client_id = env.get(f"{prefix}_CLIENT_ID")
            client_secret = env.get(f"{prefix}_CLIENT_SECRET")
            if client_id and client_secret:
                providers[provider] = ProviderCredentials(
                    client_id=client_id, client_secret=client_secret
                )

        values = {
            "local_mode": _flag(env.get("LOCAL_MODE")),
            "dynamodb_table": env.get("DYNAMODB_TABLE"),
            "aws_region": env.get("AWS_REGION"),
            "dynamodb_endpoint_url": env.get("DYNAMODB_ENDPOINT_URL"),
            "kms_key_id": env.get("KMS_KEY_ID"),
            "token_encryption_key": env.get("TOKEN_ENCRYPTION_KEY"),
            "sync_endpoint_url": env.get("SYNC_ENDPOINT_URL"),
            "sync_api_key": env.get("SYNC_API_KEY"),
            "sync_timeout_seconds": env.get("SYNC_TIMEOUT_SECONDS"),
            "stale_sync_minutes": env.get("STALE_SYNC_MINUTES"),
            "auth_flow_ttl_minutes": env.get("AUTH_FLOW_TTL_MINUTES"),
            "oauth_redirect_uri": env.get("OAUTH_REDIRECT_URI"),
            "log_level": env.get("LOG_LEVEL"),
        }
        return cls(
            providers=providers,
            **{k: v for k, v in values.items() if v not in (None, "")},
        )

    def credentials_for(self, provider: Provider | str) -> ProviderCredentials | None:
        return self.providers.get(Provider(provider))
