"""FitLink Connector - device linking, credential storage and sync orchestration."""

from .auth_flow import AuthFlowBroker
from .config import Settings
from .exceptions import (
    AlreadySyncingError,
    ConnectorError,
    DeviceDisconnectedError,
    DeviceNotFoundError,
    ExpiredOrInvalidStateError,
    InvalidPreferencesError,
    InvalidProviderError,
    NotAuthenticatedError,
    OAuthError,
    ProviderAuthError,
    ReauthenticationRequiredError,
    StoreError,
    SyncFailedError,
    SyncTimeoutError,
    TokenError,
    TokenExpiredError,
)
from .orchestrator import SyncOrchestrator
from .preferences import SyncPreferencesManager
from .registry import DeviceRegistry
from .service import WearableService, create_service
from .store import DeviceStore, DynamoDBDeviceStore, InMemoryDeviceStore
from .sync_client import HttpSyncClient, SyncClient, SyncRequest, SyncResponse
from .tokens import CredentialStore
from .vendor_types import (
    AuthFlowState,
    ConnectedDevice,
    DeviceStatus,
    DeviceSyncHistory,
    OAuthTokens,
    SyncPreferences,
    SyncResult,
    SyncStatus,
    SyncType,
)

__version__ = "0.1.0"

__all__ = [
    "AuthFlowBroker",
    "DeviceRegistry",
    "SyncOrchestrator",
    "SyncPreferencesManager",
    "WearableService",
    "create_service",
    "Settings",
    "CredentialStore",
    "DeviceStore",
    "DynamoDBDeviceStore",
    "InMemoryDeviceStore",
    "SyncClient",
    "HttpSyncClient",
    "SyncRequest",
    "SyncResponse",
    "AuthFlowState",
    "ConnectedDevice",
    "DeviceStatus",
    "DeviceSyncHistory",
    "OAuthTokens",
    "SyncPreferences",
    "SyncResult",
    "SyncStatus",
    "SyncType",
    "ConnectorError",
    "AlreadySyncingError",
    "DeviceDisconnectedError",
    "DeviceNotFoundError",
    "ExpiredOrInvalidStateError",
    "InvalidPreferencesError",
    "InvalidProviderError",
    "NotAuthenticatedError",
    "OAuthError",
    "ProviderAuthError",
    "ReauthenticationRequiredError",
    "StoreError",
    "SyncFailedError",
    "SyncTimeoutError",
    "TokenError",
    "TokenExpiredError",
]
