"""
Sync orchestration for connected devices.

One sync per device at a time: ``trigger_sync`` claims the device by moving it
to ``syncing`` with a compare-and-set, makes one bounded remote call, then
persists normalized data, settles the device and appends a history row, in
that order. A second trigger while the claim is held fails fast.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta

from fitlink_normalize import HealthDataNormalizer
from fitlink_normalize.normalizer import iter_records

from .exceptions import (
    AlreadySyncingError,
    ConnectorError,
    DeviceDisconnectedError,
    InvalidPreferencesError,
    OAuthError,
    ProviderAuthError,
    ReauthenticationRequiredError,
    SyncFailedError,
    SyncTimeoutError,
    TokenExpiredError,
)
from .oauth import OAuthHandler
from .providers import get_provider_config
from .preferences import SyncPreferencesManager
from .registry import DeviceRegistry
from .store import DeviceStore
from .sync_client import SyncClient, SyncRequest, SyncResponse
from .tokens import CredentialStore
from .vendor_types import (
    SYNCABLE_STATUSES,
    ConnectedDevice,
    DeviceStatus,
    DeviceSyncHistory,
    HealthDataType,
    OAuthTokens,
    SyncResult,
    SyncStatus,
    SyncType,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_SYNC_TIMEOUT = 5.0
DEFAULT_BACKFILL_DAYS = 7
DEFAULT_STALE_SYNC_TIMEOUT = timedelta(minutes=10)
RECENT_HISTORY_SCAN = 20


def raise_for_status(device: ConnectedDevice) -> None:
    """Raise the error matching a device status that cannot start a sync."""
    if device.status == DeviceStatus.DISCONNECTED:
        raise DeviceDisconnectedError(
            f"Device {device.id} is disconnected", provider=device.provider.value
        )
    if device.status in (DeviceStatus.TOKEN_EXPIRED, DeviceStatus.PENDING_AUTH):
        raise ReauthenticationRequiredError(
            f"Device {device.id} must be reconnected before syncing",
            provider=device.provider.value,
        )
    if device.status == DeviceStatus.SYNCING:
        raise AlreadySyncingError(
            f"Device {device.id} is already syncing", provider=device.provider.value
        )


class SyncOrchestrator:
    """Runs device syncs and records their outcome."""

    def __init__(
        self,
        store: DeviceStore,
        registry: DeviceRegistry,
        preferences: SyncPreferencesManager,
        credentials: CredentialStore,
        sync_client: SyncClient,
        normalizer: HealthDataNormalizer | None = None,
        oauth_factory: Callable[[str], OAuthHandler | None] | None = None,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
        stale_sync_timeout: timedelta = DEFAULT_STALE_SYNC_TIMEOUT,
    ):
        """
        Args:
            store: Persistence backend
            registry: Device state machine
            preferences: Sync preferences
            credentials: Provider token storage
            sync_client: Remote sync executor
            normalizer: Vendor payload normalizer
            oauth_factory: Returns an OAuthHandler for a provider, used to refresh tokens
            timeout: Seconds allowed for the remote sync call
            stale_sync_timeout: How long a device may stay ``syncing`` before the watchdog resolves it
        """
        self.store = store
        self.registry = registry
        self.preferences = preferences
        self.credentials = credentials
        self.sync_client = sync_client
        self.normalizer = normalizer or HealthDataNormalizer()
        self.oauth_factory = oauth_factory
        self.timeout = timeout
        self.stale_sync_timeout = stale_sync_timeout
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # single device

    def resolve_data_types(
        self,
        device: ConnectedDevice,
        requested: Iterable[HealthDataType | str] | None = None,
    ) -> list[HealthDataType]:
        """
        Requested types, else the enabled preference set, else (no preferences
        stored) everything the provider supports; always limited to what the
        provider supports.

        Raises:
            InvalidPreferencesError: Unknown type names or nothing left to sync
        """
        supported = get_provider_config(device.provider).data_types
        if requested is not None:
            try:
                wanted = [HealthDataType(t) for t in requested]
            except ValueError as e:
                raise InvalidPreferencesError(f"Unknown data type: {e}") from e
        else:
            prefs = self.preferences.get(device.id)
            if prefs is None:
                wanted = supported
            elif not prefs.data_types_enabled:
                raise InvalidPreferencesError(
                    f"All data types are disabled for device {device.id}",
                    provider=device.provider.value,
                )
            else:
                wanted = list(prefs.data_types_enabled)

        resolved = [t for t in dict.fromkeys(wanted) if t in supported]
        if not resolved:
            raise InvalidPreferencesError(
                f"None of the requested data types are supported by {device.provider.value}",
                provider=device.provider.value,
            )
        return resolved

    async def trigger_sync(
        self,
        user_id: str | None,
        device_id: str,
        data_types: Iterable[HealthDataType | str] | None = None,
        sync_type: SyncType = SyncType.MANUAL,
    ) -> DeviceSyncHistory:
        """
        Sync one device.

        Returns:
            The history row of the attempt (success, partial or cancelled)

        Raises:
            NotAuthenticatedError, DeviceNotFoundError: Caller cannot see the device
            DeviceDisconnectedError, ReauthenticationRequiredError: Device cannot sync
            AlreadySyncingError: Another sync holds the device
            ProviderAuthError, SyncTimeoutError, SyncFailedError: The attempt failed;
                the failure is already recorded in history
        """
        device = self.registry.get(user_id, device_id)
        raise_for_status(device)
        types = self.resolve_data_types(device, data_types)

        claimed = self.registry.begin_sync(device_id)
        if claimed is None:
            current = self.registry.get(user_id, device_id)
            raise_for_status(current)
            raise AlreadySyncingError(
                f"Device {device_id} changed state; retry", provider=device.provider.value
            )

        started_at = claimed.sync_started_at or utcnow()
        clock = time.monotonic()
        logger.info(
            "Starting %s sync of %s for device %s (%s)",
            sync_type.value, device.provider.value, device_id, ", ".join(t.value for t in types),
        )

        try:
            return await self._run(claimed, types, sync_type, started_at, clock)
        except asyncio.CancelledError:
            error = SyncFailedError(
                "Sync was cancelled", provider=device.provider.value, provider_code="cancelled"
            )
            self._record_failure(claimed, types, sync_type, started_at, clock, error)
            raise
        except ConnectorError as e:
            self._record_failure(claimed, types, sync_type, started_at, clock, e)
            raise
        except Exception as e:
            logger.exception("Unexpected error syncing device %s", device_id)
            error = SyncFailedError(
                f"Unexpected error: {e}", provider=device.provider.value, provider_code="internal_error"
            )
            self._record_failure(claimed, types, sync_type, started_at, clock, error)
            raise error from e

    async def _run(
        self,
        device: ConnectedDevice,
        types: list[HealthDataType],
        sync_type: SyncType,
        started_at: datetime,
        clock: float,
    ) -> DeviceSyncHistory:
        prefs = self.preferences.get(device.id)
        backfill_days = prefs.backfill_days if prefs else DEFAULT_BACKFILL_DAYS
        since = device.last_sync_at or (started_at - timedelta(days=backfill_days))

        tokens = await self._credentials_for(device)
        request = SyncRequest(
            device_id=device.id,
            user_id=device.user_id,
            provider=device.provider.value,
            data_types=types,
            since=since,
            access_token=tokens.access_token,
        )

        try:
            response = await asyncio.wait_for(self.sync_client.execute_sync(request), self.timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"Sync did not complete within {self.timeout:g}s",
                provider=device.provider.value,
            ) from e

        synced_at = utcnow()
        fetched, rows = self._normalize(device, types, response, synced_at)
        stored = self.store.upsert_health_data(rows)

        settled = self.registry.complete_sync(device.id, synced_at)
        if settled is None:
            recorded = self._recorded_outcome(device.id, started_at)
            if recorded is not None:
                logger.info(
                    "Sync of device %s finished after it was resolved as %s; keeping that outcome",
                    device.id, recorded.error_code or recorded.status.value,
                )
                return recorded

        synced_types = [t for t in types if t.value not in response.errors]
        if settled is None:
            status = SyncStatus.CANCELLED
            error_message = "Device state changed while the sync was running"
        elif response.errors:
            status = SyncStatus.PARTIAL
            error_message = "; ".join(f"{k}: {v}" for k, v in sorted(response.errors.items()))
        else:
            status = SyncStatus.SUCCESS
            error_message = None

        history = DeviceSyncHistory(
            device_id=device.id,
            user_id=device.user_id,
            sync_type=sync_type,
            status=status,
            data_types_synced=synced_types,
            records_fetched=fetched,
            records_stored=stored,
            duration_ms=int((time.monotonic() - clock) * 1000),
            error_message=error_message,
            error_code="partial_failure" if status == SyncStatus.PARTIAL else None,
            started_at=started_at,
            completed_at=utcnow(),
        )
        self.store.add_history(history)
        logger.info(
            "Sync of device %s finished: %s, %d fetched, %d stored",
            device.id, status.value, fetched, stored,
        )
        return history

    def _normalize(
        self,
        device: ConnectedDevice,
        types: list[HealthDataType],
        response: SyncResponse,
        synced_at: datetime,
    ):
        fetched = 0
        rows = []
        for data_type, raw in response.data.items():
            if data_type not in types or raw is None:
                continue
            fetched += sum(1 for _ in iter_records(raw))
            rows.extend(self.normalizer.normalize(
                raw,
                provider=device.provider,
                data_type=data_type,
                user_id=device.user_id,
                device_id=device.id,
                synced_at=synced_at,
            ))
        if response.records_fetched is not None:
            fetched = response.records_fetched
        return fetched, rows

    async def _credentials_for(self, device: ConnectedDevice) -> OAuthTokens:
        provider = device.provider.value
        tokens = self.credentials.get_tokens(device.id)
        if tokens is None:
            raise ProviderAuthError("No stored credentials for device", provider=provider)
        if not tokens.is_expired():
            return tokens

        handler = self.oauth_factory(provider) if self.oauth_factory else None
        if not tokens.refresh_token or handler is None:
            raise TokenExpiredError("Access token expired", provider=provider)

        try:
            refreshed = await asyncio.wait_for(
                handler.refresh_token(tokens.refresh_token), self.timeout
            )
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"Token refresh did not complete within {self.timeout:g}s", provider=provider
            ) from e
        except OAuthError as e:
            raise TokenExpiredError(f"Token refresh failed: {e.message}", provider=provider) from e
        finally:
            await handler.close()

        refreshed.provider_user_id = refreshed.provider_user_id or tokens.provider_user_id
        self.credentials.save_tokens(
            device.id, refreshed, user_id=device.user_id, provider=provider
        )
        logger.info("Refreshed access token for device %s", device.id)
        return refreshed

    def _record_failure(
        self,
        device: ConnectedDevice,
        types: list[HealthDataType],
        sync_type: SyncType,
        started_at: datetime,
        clock: float,
        error: ConnectorError,
    ) -> None:
        credentials_invalid = isinstance(error, ProviderAuthError)
        failed = self.registry.fail_sync(device.id, error.message, credentials_invalid=credentials_invalid)
        if failed is None and self._recorded_outcome(device.id, started_at) is not None:
            logger.info(
                "Sync of device %s failed after it was already resolved (%s): %s",
                device.id, error.code, error.message,
            )
            return
        self.store.add_history(DeviceSyncHistory(
            device_id=device.id,
            user_id=device.user_id,
            sync_type=sync_type,
            status=SyncStatus.FAILED,
            data_types_synced=[],
            duration_ms=int((time.monotonic() - clock) * 1000),
            error_message=error.message,
            error_code=getattr(error, "provider_code", None) or error.code,
            started_at=started_at,
            completed_at=utcnow(),
        ))
        logger.warning("Sync of device %s failed (%s): %s", device.id, error.code, error.message)

    def _recorded_outcome(self, device_id: str, started_at: datetime) -> DeviceSyncHistory | None:
        """History row already written for the attempt started at ``started_at``, if any."""
        for entry in self.store.list_history(device_id, limit=RECENT_HISTORY_SCAN):
            if entry.started_at == started_at:
                return entry
        return None

    # ------------------------------------------------------------------
    # batches and background work

    async def _settle(self, jobs: list[tuple[str, Awaitable[DeviceSyncHistory]]]) -> list[SyncResult]:
        outcomes = await asyncio.gather(*(job for _, job in jobs), return_exceptions=True)
        results = []
        for (device_id, _), outcome in zip(jobs, outcomes):
            if isinstance(outcome, ConnectorError):
                results.append(SyncResult(device_id=device_id, error=outcome))
            elif isinstance(outcome, BaseException):
                results.append(SyncResult(
                    device_id=device_id,
                    error=SyncFailedError(f"Unexpected error: {outcome!r}", provider_code="internal_error"),
                ))
            else:
                results.append(SyncResult(device_id=device_id, history=outcome))
        return results

    async def sync_many(
        self,
        user_id: str | None,
        device_ids: Iterable[str],
        data_types: Iterable[HealthDataType | str] | None = None,
        sync_type: SyncType = SyncType.MANUAL,
    ) -> list[SyncResult]:
        """Sync several devices concurrently; one settled result per device."""
        types = list(data_types) if data_types is not None else None
        jobs = [
            (device_id, self.trigger_sync(user_id, device_id, types, sync_type))
            for device_id in dict.fromkeys(device_ids)
        ]
        return await self._settle(jobs)

    def dispatch_best_effort(
        self,
        user_id: str,
        device_id: str,
        data_types: Iterable[HealthDataType | str] | None = None,
        sync_type: SyncType = SyncType.AUTOMATIC,
        timeout: float | None = None,
    ) -> asyncio.Task:
        """
        Start a sync in the background. Failures are logged, never raised.

        Must be called from a running event loop.
        """
        deadline = timeout if timeout is not None else self.timeout * 2

        async def run() -> None:
            try:
                await asyncio.wait_for(
                    self.trigger_sync(user_id, device_id, data_types, sync_type), deadline
                )
            except asyncio.TimeoutError:
                logger.warning("Background sync of device %s timed out", device_id)
            except ConnectorError as e:
                logger.warning("Background sync of device %s failed: %s", device_id, e.message)
            except Exception:
                logger.exception("Background sync of device %s crashed", device_id)

        task = asyncio.get_running_loop().create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def run_watchdog(self, now: datetime | None = None) -> list[ConnectedDevice]:
        """Resolve stuck syncs and record them as timed out."""
        now = now or utcnow()
        recovered = self.registry.recover_stale_syncs(self.stale_sync_timeout, now)
        for device in recovered:
            self.store.add_history(DeviceSyncHistory(
                device_id=device.id,
                user_id=device.user_id,
                sync_type=SyncType.AUTOMATIC,
                status=SyncStatus.FAILED,
                error_message=device.last_error,
                error_code="sync_timeout",
                started_at=device.sync_started_at or now,
                completed_at=now,
            ))
        return recovered

    async def sync_due(self, now: datetime | None = None) -> list[SyncResult]:
        """Sync every device whose preferences say a sync is due."""
        now = now or utcnow()
        jobs = []
        for device in self.store.list_devices_with_status(SYNCABLE_STATUSES):
            prefs = self.preferences.get(device.id)
            if self.preferences.is_sync_due(device, prefs, now):
                jobs.append((
                    device.id,
                    self.trigger_sync(device.user_id, device.id, sync_type=SyncType.SCHEDULED),
                ))
        logger.info("Scheduled sync: %d devices due", len(jobs))
        return await self._settle(jobs)
