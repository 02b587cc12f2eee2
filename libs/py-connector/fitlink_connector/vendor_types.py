"""Type definitions, enums, and Pydantic models for the connector."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from fitlink_normalize.schema import HealthDataType, Provider, to_utc

from .exceptions import ConnectorError

SYNC_FREQUENCIES = (15, 30, 60, 120, 240, 480, 1440)
MAX_BACKFILL_DAYS = 365


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class DeviceType(str, Enum):
    """Physical device category."""

    SMARTWATCH = "smartwatch"
    FITNESS_TRACKER = "fitness_tracker"
    BIKE_COMPUTER = "bike_computer"
    HEART_RATE_MONITOR = "heart_rate_monitor"
    RUNNING_WATCH = "running_watch"
    OTHER = "other"


class DeviceStatus(str, Enum):
    """Connected device lifecycle status."""

    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    PENDING_AUTH = "pending_auth"
    TOKEN_EXPIRED = "token_expired"


# Statuses from which a sync may start.
SYNCABLE_STATUSES = frozenset({DeviceStatus.CONNECTED, DeviceStatus.ERROR})


class SyncType(str, Enum):
    """What initiated a sync attempt."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class SyncStatus(str, Enum):
    """Outcome of a sync attempt."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OAuthTokens(BaseModel):
    """OAuth token set from provider API."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None  # seconds
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scopes: list[str] = Field(default_factory=list)
    provider_user_id: str | None = None

    def is_expired(self, skew_seconds: int = 60) -> bool:
        """Check if access token has expired (or will within ``skew_seconds``)."""
        if not self.expires_at:
            return False
        expires_at = to_utc(self.expires_at)
        return utcnow().timestamp() + skew_seconds >= expires_at.timestamp()


class ProviderConfig(BaseModel):
    """Static provider registry entry."""

    id: Provider
    name: str
    description: str
    icon: str
    color: str
    auth_url: str | None = None
    token_url: str | None = None
    revoke_url: str | None = None
    scopes: list[str] = Field(default_factory=list)
    scope_separator: str = " "
    supports_pkce: bool = False
    extra_auth_params: dict[str, str] = Field(default_factory=dict)
    data_types: list[HealthDataType]
    supports_webhooks: bool = False
    requires_app: bool = False
    platform: str = "all"
    device_type: DeviceType = DeviceType.OTHER

    @property
    def supports_oauth(self) -> bool:
        return bool(self.auth_url and self.token_url)


class ConnectedDevice(BaseModel):
    """A user's link to one provider account."""

    id: str = Field(default_factory=new_id)
    user_id: str
    provider: Provider
    provider_user_id: str | None = None
    display_name: str | None = None
    device_type: DeviceType = DeviceType.OTHER
    status: DeviceStatus = DeviceStatus.PENDING_AUTH
    scopes: list[str] = Field(default_factory=list)
    last_sync_at: datetime | None = None
    last_error: str | None = None
    error_count: int = Field(0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    connected_at: datetime | None = None
    sync_started_at: datetime | None = None  # start of the most recent sync
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("scopes")
    @classmethod
    def unique_scopes(cls, v: list[str]) -> list[str]:
        """Scopes behave as a set; keep first-seen order."""
        return list(dict.fromkeys(s for s in v if s))

    @property
    def is_syncable(self) -> bool:
        return self.status in SYNCABLE_STATUSES


class DeviceSyncHistory(BaseModel):
    """One sync attempt; append-only."""

    id: str = Field(default_factory=new_id)
    device_id: str
    user_id: str
    sync_type: SyncType = SyncType.MANUAL
    status: SyncStatus
    data_types_synced: list[HealthDataType] = Field(default_factory=list)
    records_fetched: int = 0
    records_stored: int = 0
    duration_ms: int | None = None
    error_message: str | None = None
    error_code: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class SyncPreferences(BaseModel):
    """Per-device sync policy."""

    device_id: str
    user_id: str
    auto_sync_enabled: bool = True
    sync_frequency_minutes: int = 60
    data_types_enabled: list[HealthDataType] = Field(default_factory=list)
    sync_only_wifi: bool = False
    notify_on_sync: bool = False
    notify_on_error: bool = True
    backfill_days: int = Field(7, ge=0, le=MAX_BACKFILL_DAYS)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("sync_frequency_minutes")
    @classmethod
    def allowed_frequency(cls, v: int) -> int:
        if v not in SYNC_FREQUENCIES:
            raise ValueError(f"sync_frequency_minutes must be one of {SYNC_FREQUENCIES}")
        return v

    @field_validator("data_types_enabled")
    @classmethod
    def unique_data_types(cls, v: list[HealthDataType]) -> list[HealthDataType]:
        return list(dict.fromkeys(v))


class AuthFlowState(BaseModel):
    """
    Pending OAuth authorization round trip.

    Only ``state_hash`` is persisted. The plaintext ``state`` is populated on
    the object returned to the caller that created the flow and is never
    serialized.
    """

    state_hash: str
    user_id: str
    provider: Provider
    redirect_uri: str
    code_verifier: str | None = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    state: str | None = Field(None, exclude=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class SyncResult:
    """Settled outcome of one device sync in a batch."""

    device_id: str
    history: DeviceSyncHistory | None = None
    error: ConnectorError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to API response format."""
        return {
            "device_id": self.device_id,
            "ok": self.ok,
            "history": self.history.model_dump(mode="json") if self.history else None,
            "error": self.error.to_dict()["error"] if self.error else None,
        }


__all__ = [
    "AuthFlowState",
    "ConnectedDevice",
    "DeviceStatus",
    "DeviceSyncHistory",
    "DeviceType",
    "HealthDataType",
    "MAX_BACKFILL_DAYS",
    "OAuthTokens",
    "Provider",
    "ProviderConfig",
    "SYNCABLE_STATUSES",
    "SYNC_FREQUENCIES",
    "SyncPreferences",
    "SyncResult",
    "SyncStatus",
    "SyncType",
    "new_id",
    "utcnow",
]
