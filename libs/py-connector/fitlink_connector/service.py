"""
Inbound facade for device linking, sync and health data queries.

``WearableService`` holds no per-request state; every call takes the caller's
``user_id`` and the instance is shared by the HTTP layer.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from fitlink_normalize import (
    DailyValue,
    HealthDataNormalizer,
    NormalizedWorkout,
    WearableHealthData,
    aggregate_daily,
)
from fitlink_normalize.schema import to_utc

from .auth_flow import AuthFlowBroker
from .config import Settings
from .exceptions import InvalidProviderError, NotAuthenticatedError, OAuthError
from .oauth import OAuthHandler
from .orchestrator import SyncOrchestrator
from .preferences import SyncPreferencesManager
from .providers import get_provider_config, list_providers
from .registry import DeviceRegistry, device_id_for
from .store import DeviceStore, DynamoDBDeviceStore, InMemoryDeviceStore
from .sync_client import HttpSyncClient, SyncClient
from .tokens import CredentialStore
from .vendor_types import (
    ConnectedDevice,
    DeviceSyncHistory,
    HealthDataType,
    ProviderConfig,
    SyncPreferences,
    SyncResult,
)

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100
MAX_HEALTH_DATA_LIMIT = 1000


class WearableService:
    """Device connection, sync and data access for one deployment."""

    def __init__(
        self,
        store: DeviceStore,
        credentials: CredentialStore,
        sync_client: SyncClient,
        settings: Settings | None = None,
        oauth_factory: Callable[[str], OAuthHandler | None] | None = None,
        normalizer: HealthDataNormalizer | None = None,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.credentials = credentials
        self.sync_client = sync_client
        self.oauth_factory = oauth_factory or self._oauth_handler_for

        self.registry = DeviceRegistry(store)
        self.preferences = SyncPreferencesManager(store)
        self.broker = AuthFlowBroker(
            store, ttl=timedelta(minutes=self.settings.auth_flow_ttl_minutes)
        )
        self.orchestrator = SyncOrchestrator(
            store=store,
            registry=self.registry,
            preferences=self.preferences,
            credentials=credentials,
            sync_client=sync_client,
            normalizer=normalizer,
            oauth_factory=self.oauth_factory,
            timeout=self.settings.sync_timeout_seconds,
            stale_sync_timeout=timedelta(minutes=self.settings.stale_sync_minutes),
        )

    def _oauth_handler_for(self, provider: str) -> OAuthHandler | None:
        client = self.settings.credentials_for(provider)
        if client is None or not get_provider_config(provider).supports_oauth:
            return None
        return OAuthHandler.for_provider(provider, client.client_id, client.client_secret)

    # ------------------------------------------------------------------
    # linking

    async def connect_device(
        self,
        user_id: str | None,
        provider: str,
        redirect_uri: str | None = None,
    ) -> str:
        """
        Start linking ``provider`` and return the authorization URL.

        Raises:
            NotAuthenticatedError: No caller
            InvalidProviderError: Unknown provider, native-app provider or no OAuth client configured
        """
        if not user_id:
            raise NotAuthenticatedError()
        config = get_provider_config(provider)
        if not config.supports_oauth:
            raise InvalidProviderError(
                f"{config.name} requires the native app and cannot be linked over OAuth",
                provider=config.id.value,
            )
        handler = self.oauth_factory(config.id.value)
        if handler is None:
            raise InvalidProviderError(
                f"OAuth client not configured for {config.id.value}", provider=config.id.value
            )

        redirect_uri = redirect_uri or self.settings.oauth_redirect_uri
        async with handler:
            flow = self.broker.create_flow(user_id, config.id.value, redirect_uri)
            self.registry.mark_pending_auth(user_id, config.id)
            return handler.build_authorization_url(
                redirect_uri=redirect_uri,
                scopes=config.scopes,
                state=flow.state,
                code_verifier=flow.code_verifier,
                **config.extra_auth_params,
            )

    async def handle_oauth_callback(
        self,
        code: str | None,
        state: str | None,
        user_id: str | None = None,
        error: str | None = None,
    ) -> ConnectedDevice:
        """
        Complete linking: consume the state, exchange the code, store credentials.

        Args:
            code: Authorization code from the provider redirect
            state: State token from the provider redirect
            user_id: Caller, when the callback carries a session
            error: Error the provider reported instead of a code (e.g. access_denied)

        Raises:
            ExpiredOrInvalidStateError: Bad, expired or reused state token
            OAuthError: Authorization denied or code exchange failed
        """
        flow = self.broker.consume_flow(state, user_id)
        provider = flow.provider.value
        if error or not code:
            logger.info("Authorization for %s was not granted: %s", provider, error)
            raise OAuthError(f"Authorization failed: {error or 'missing code'}", provider=provider)

        handler = self.oauth_factory(provider)
        if handler is None:
            raise InvalidProviderError(f"OAuth client not configured for {provider}", provider=provider)
        async with handler:
            tokens = await handler.exchange_code(
                code, flow.redirect_uri, code_verifier=flow.code_verifier
            )

        self.credentials.save_tokens(
            device_id_for(flow.user_id, provider), tokens, user_id=flow.user_id, provider=provider
        )
        device = self.registry.connect(flow.user_id, provider, tokens)
        self.preferences.ensure_defaults(device)
        return device

    def list_devices(self, user_id: str | None) -> list[ConnectedDevice]:
        return self.registry.list_for_user(user_id)

    async def disconnect_device(self, user_id: str | None, device_id: str) -> ConnectedDevice:
        """Disconnect and revoke credentials; provider-side revocation is best effort."""
        device = self.registry.disconnect(user_id, device_id)

        tokens = self.credentials.get_tokens(device_id)
        handler = self.oauth_factory(device.provider.value) if tokens else None
        if handler is not None:
            async with handler:
                try:
                    await handler.revoke_token(tokens.access_token)
                except OAuthError as e:
                    logger.warning("Provider token revocation failed for %s: %s", device_id, e.message)
        self.credentials.revoke_tokens(device_id)
        return device

    def delete_device(self, user_id: str | None, device_id: str) -> None:
        """Remove the device, its credentials and preferences. History and health data stay."""
        self.registry.get(user_id, device_id)
        self.credentials.delete_tokens(device_id)
        self.preferences.delete(device_id)
        self.registry.delete(user_id, device_id)

    # ------------------------------------------------------------------
    # sync

    async def trigger_sync(
        self,
        user_id: str | None,
        device_id: str,
        data_types: Iterable[HealthDataType | str] | None = None,
    ) -> DeviceSyncHistory:
        return await self.orchestrator.trigger_sync(user_id, device_id, data_types)

    async def sync_devices(
        self,
        user_id: str | None,
        device_ids: Iterable[str],
        data_types: Iterable[HealthDataType | str] | None = None,
    ) -> list[SyncResult]:
        if not user_id:
            raise NotAuthenticatedError()
        return await self.orchestrator.sync_many(user_id, device_ids, data_types)

    async def sync_due_devices(self, now: datetime | None = None) -> list[SyncResult]:
        """Scheduler tick: resolve stuck syncs, purge stale auth flows, sync due devices."""
        self.orchestrator.run_watchdog(now)
        self.broker.purge_expired(now)
        return await self.orchestrator.sync_due(now)

    def get_sync_history(
        self, user_id: str | None, device_id: str, limit: int = 20
    ) -> list[DeviceSyncHistory]:
        self.registry.get(user_id, device_id)
        return self.store.list_history(device_id, max(1, min(limit, MAX_HISTORY_LIMIT)))

    # ------------------------------------------------------------------
    # preferences

    def get_sync_preferences(self, user_id: str | None, device_id: str) -> SyncPreferences | None:
        self.registry.get(user_id, device_id)
        return self.preferences.get(device_id)

    def update_sync_preferences(
        self, user_id: str | None, device_id: str, partial: dict[str, Any]
    ) -> SyncPreferences:
        device = self.registry.get(user_id, device_id)
        return self.preferences.update(device_id, partial, device=device)

    # ------------------------------------------------------------------
    # data access

    def get_health_data(
        self,
        user_id: str | None,
        data_type: HealthDataType | str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = MAX_HEALTH_DATA_LIMIT,
    ) -> list[WearableHealthData]:
        if not user_id:
            raise NotAuthenticatedError()
        return self.store.query_health_data(
            user_id,
            HealthDataType(data_type),
            start=to_utc(start) if start else None,
            end=to_utc(end) if end else None,
            limit=max(1, min(limit, MAX_HEALTH_DATA_LIMIT)),
        )

    def get_latest_workouts(self, user_id: str | None, limit: int = 10) -> list[NormalizedWorkout]:
        """Most recent workouts, rebuilt from stored workout rows."""
        rows = self.get_health_data(user_id, HealthDataType.WORKOUT, limit=limit)
        workouts = []
        for row in rows:
            if not row.value_json:
                continue
            try:
                workouts.append(NormalizedWorkout.model_validate({
                    **row.value_json,
                    "user_id": row.user_id,
                    "device_id": row.device_id,
                    "raw_data": row.raw_data or {},
                }))
            except ValidationError as e:
                logger.warning("Skipping unreadable workout row %s: %s", row.id, e)
        return workouts

    def get_aggregated_data(
        self,
        user_id: str | None,
        data_type: HealthDataType | str,
        start: datetime,
        end: datetime,
    ) -> list[DailyValue]:
        if not user_id:
            raise NotAuthenticatedError()
        rows = self.store.query_health_data(
            user_id, HealthDataType(data_type), start=to_utc(start), end=to_utc(end)
        )
        return aggregate_daily(rows)

    @staticmethod
    def list_providers() -> list[ProviderConfig]:
        return list_providers()

    async def close(self) -> None:
        await self.sync_client.close()


def create_service(settings: Settings | None = None) -> WearableService:
    """Wire a WearableService from settings (environment by default)."""
    settings = settings or Settings.from_env()

    if settings.local_mode:
        logger.info("LOCAL_MODE enabled; using in-memory storage")
        store: DeviceStore = InMemoryDeviceStore()
    else:
        store = DynamoDBDeviceStore(
            settings.dynamodb_table,
            region_name=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint_url,
        )

    credentials = CredentialStore(
        table_name=settings.dynamodb_table,
        kms_key_id=settings.kms_key_id,
        region_name=settings.aws_region,
        encryption_key=settings.token_encryption_key,
        local_mode=settings.local_mode,
        endpoint_url=settings.dynamodb_endpoint_url,
    )
    sync_client = HttpSyncClient(
        settings.sync_endpoint_url,
        api_key=settings.sync_api_key,
        timeout=settings.sync_timeout_seconds,
    )
    return WearableService(store, credentials, sync_client, settings=settings)
