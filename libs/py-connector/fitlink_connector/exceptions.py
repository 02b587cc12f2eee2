"""Custom exceptions for the FitLink connector library."""

import re


def _error_code(cls: type) -> str:
    """``SyncTimeoutError`` -> ``sync_timeout``."""
    name = cls.__name__.removesuffix("Error")
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class ConnectorError(Exception):
    """Base exception for all connector errors."""

    def __init__(self, message: str, provider: str | None = None, trace_id: str | None = None):
        self.message = message
        self.provider = provider
        self.trace_id = trace_id
        super().__init__(message)

    @property
    def code(self) -> str:
        """Stable machine-readable error code."""
        return _error_code(type(self))

    def to_dict(self) -> dict:
        """Convert exception to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "provider": self.provider,
                "trace_id": self.trace_id,
            }
        }


class InvalidProviderError(ConnectorError):
    """Provider is unknown to the registry or cannot be linked over OAuth."""


class ExpiredOrInvalidStateError(ConnectorError):
    """OAuth state token is unknown, expired, already consumed or tampered with."""

    def __init__(self, provider: str | None = None, trace_id: str | None = None):
        super().__init__("Invalid or expired OAuth state", provider, trace_id)


class NotAuthenticatedError(ConnectorError):
    """Caller has no authenticated session."""

    def __init__(self, message: str = "Not authenticated", **kwargs):
        super().__init__(message, **kwargs)


class DeviceNotFoundError(ConnectorError):
    """Device does not exist or is not visible to the caller."""


class DeviceDisconnectedError(ConnectorError):
    """Device was explicitly disconnected."""


class ReauthenticationRequiredError(DeviceDisconnectedError):
    """Device credentials expired; the user must reconnect before syncing."""


class AlreadySyncingError(ConnectorError):
    """A sync is already in flight for the device."""


class ProviderAuthError(ConnectorError):
    """Provider rejected the stored credentials."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        trace_id: str | None = None,
        provider_code: str | None = None,
    ):
        super().__init__(message, provider, trace_id)
        self.provider_code = provider_code


class TokenExpiredError(ProviderAuthError):
    """Access token expired and could not be refreshed."""


class SyncTimeoutError(ConnectorError):
    """Remote sync call exceeded its timeout."""


class SyncFailedError(ConnectorError):
    """Remote sync failed; provider code and message are kept verbatim."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        trace_id: str | None = None,
        provider_code: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, provider, trace_id)
        self.provider_code = provider_code
        self.status_code = status_code


class OAuthError(ConnectorError):
    """OAuth-related errors (exchange failed, invalid grant, etc.)."""


class TokenError(ConnectorError):
    """Credential storage, retrieval, or encryption errors."""


class StoreError(ConnectorError):
    """Persistence backend errors."""


class InvalidPreferencesError(ConnectorError):
    """Sync preference update failed validation."""
