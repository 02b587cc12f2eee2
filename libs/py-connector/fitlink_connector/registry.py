"""
Connected device registry and its status state machine.

    disconnected -> pending_auth -> connected -> syncing -> connected
                                                         -> error
                                                         -> token_expired

Every transition is a compare-and-set on the stored status, so concurrent
writers cannot both win a transition out of the same state.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from .exceptions import DeviceNotFoundError, NotAuthenticatedError
from .providers import get_provider_config
from .store import DeviceStore
from .vendor_types import (
    SYNCABLE_STATUSES,
    ConnectedDevice,
    DeviceStatus,
    OAuthTokens,
    Provider,
    utcnow,
)

logger = logging.getLogger(__name__)

ALL_STATUSES = frozenset(DeviceStatus)
MAX_CAS_ATTEMPTS = 5


def device_id_for(user_id: str, provider: Provider | str) -> str:
    """Stable device id; one device per user and provider."""
    return str(uuid5(NAMESPACE_URL, f"fitlink:device:{user_id}:{Provider(provider).value}"))


class DeviceRegistry:
    """Reads and transitions ConnectedDevice records."""

    def __init__(self, store: DeviceStore):
        self.store = store

    def get(self, user_id: str | None, device_id: str) -> ConnectedDevice:
        """
        Fetch a device owned by ``user_id``.

        Raises:
            NotAuthenticatedError: If there is no caller
            DeviceNotFoundError: If missing or owned by someone else
        """
        if not user_id:
            raise NotAuthenticatedError()
        device = self.store.get_device(device_id)
        if device is None or device.user_id != user_id:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        return device

    def list_for_user(self, user_id: str | None) -> list[ConnectedDevice]:
        if not user_id:
            raise NotAuthenticatedError()
        devices = self.store.list_devices(user_id)
        return sorted(devices, key=lambda d: d.created_at)

    def _transition(
        self,
        device_id: str,
        expected: Iterable[DeviceStatus],
        changes: Callable[[ConnectedDevice], dict[str, Any]],
    ) -> ConnectedDevice | None:
        """
        Apply ``changes`` if the device's status is in ``expected``.

        Returns the updated device, or None when the device is gone or in a
        state the transition does not apply to.
        """
        expected = frozenset(expected)
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.store.get_device(device_id)
            if current is None or current.status not in expected:
                return None
            updated = current.model_copy(update={**changes(current), "updated_at": utcnow()})
            if self.store.replace_device_if_status(updated, {current.status}):
                return updated
        logger.warning("Gave up updating device %s after %d attempts", device_id, MAX_CAS_ATTEMPTS)
        return None

    def mark_pending_auth(self, user_id: str, provider: Provider | str) -> ConnectedDevice:
        """
        Record that an auth flow started for ``provider``.

        Creates a placeholder when the user never linked the provider. A
        device that is connected or syncing keeps its status.
        """
        config = get_provider_config(provider)
        device_id = device_id_for(user_id, config.id)

        existing = self.store.get_device(device_id)
        if existing is None:
            device = ConnectedDevice(
                id=device_id,
                user_id=user_id,
                provider=config.id,
                display_name=config.name,
                device_type=config.device_type,
                status=DeviceStatus.PENDING_AUTH,
            )
            self.store.put_device(device)
            return device

        keep = {DeviceStatus.CONNECTED, DeviceStatus.SYNCING}
        updated = self._transition(
            device_id,
            ALL_STATUSES - keep,
            lambda d: {"status": DeviceStatus.PENDING_AUTH},
        )
        return updated or self.store.get_device(device_id) or existing

    def connect(
        self,
        user_id: str,
        provider: Provider | str,
        tokens: OAuthTokens,
        display_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ConnectedDevice:
        """
        Upsert the user's device for ``provider`` after a code exchange.

        A device that is mid-sync keeps ``syncing`` so the in-flight sync can
        still settle; every other state becomes ``connected``.
        """
        config = get_provider_config(provider)
        device_id = device_id_for(user_id, config.id)
        now = utcnow()

        def changes(current: ConnectedDevice) -> dict[str, Any]:
            update: dict[str, Any] = {
                "provider_user_id": tokens.provider_user_id or current.provider_user_id,
                "scopes": list(dict.fromkeys(tokens.scopes or current.scopes)),
                "connected_at": now,
                "metadata": {**current.metadata, **(metadata or {})},
            }
            if display_name:
                update["display_name"] = display_name
            if current.status != DeviceStatus.SYNCING:
                update["status"] = DeviceStatus.CONNECTED
                update["last_error"] = None
            return update

        for _ in range(MAX_CAS_ATTEMPTS):
            if self.store.get_device(device_id) is None:
                device = ConnectedDevice(
                    id=device_id,
                    user_id=user_id,
                    provider=config.id,
                    provider_user_id=tokens.provider_user_id,
                    display_name=display_name or config.name,
                    device_type=config.device_type,
                    status=DeviceStatus.CONNECTED,
                    scopes=tokens.scopes,
                    metadata=metadata or {},
                    connected_at=now,
                    created_at=now,
                    updated_at=now,
                )
                self.store.put_device(device)
                logger.info("Connected %s device %s for user %s", config.id.value, device_id, user_id)
                return device

            updated = self._transition(device_id, ALL_STATUSES, changes)
            if updated is not None:
                logger.info("Reconnected %s device %s for user %s", config.id.value, device_id, user_id)
                return updated

        raise DeviceNotFoundError(f"Device {device_id} changed concurrently; retry")

    def begin_sync(self, device_id: str, now: datetime | None = None) -> ConnectedDevice | None:
        """connected/error -> syncing; None if the device was not syncable."""
        now = now or utcnow()
        return self._transition(
            device_id,
            SYNCABLE_STATUSES,
            lambda d: {"status": DeviceStatus.SYNCING, "sync_started_at": now},
        )

    def complete_sync(self, device_id: str, synced_at: datetime | None = None) -> ConnectedDevice | None:
        """syncing -> connected; None (discarded) if no longer syncing."""
        synced_at = synced_at or utcnow()
        updated = self._transition(
            device_id,
            {DeviceStatus.SYNCING},
            lambda d: {
                "status": DeviceStatus.CONNECTED,
                "last_sync_at": synced_at,
                "error_count": 0,
                "last_error": None,
            },
        )
        if updated is None:
            logger.info("Discarding late sync completion for device %s", device_id)
        return updated

    def fail_sync(
        self,
        device_id: str,
        message: str,
        credentials_invalid: bool = False,
    ) -> ConnectedDevice | None:
        """syncing -> error (or token_expired); None (discarded) if no longer syncing."""
        status = DeviceStatus.TOKEN_EXPIRED if credentials_invalid else DeviceStatus.ERROR
        updated = self._transition(
            device_id,
            {DeviceStatus.SYNCING},
            lambda d: {
                "status": status,
                "error_count": d.error_count + 1,
                "last_error": message,
            },
        )
        if updated is None:
            logger.info("Discarding late sync failure for device %s", device_id)
        return updated

    def disconnect(self, user_id: str | None, device_id: str) -> ConnectedDevice:
        """Move to ``disconnected`` from any state. Idempotent."""
        device = self.get(user_id, device_id)
        if device.status == DeviceStatus.DISCONNECTED:
            return device
        updated = self._transition(
            device_id,
            ALL_STATUSES - {DeviceStatus.DISCONNECTED},
            lambda d: {"status": DeviceStatus.DISCONNECTED},
        )
        logger.info("Disconnected device %s", device_id)
        return updated or self.get(user_id, device_id)

    def delete(self, user_id: str | None, device_id: str) -> None:
        """Hard-delete a device record."""
        self.get(user_id, device_id)
        self.store.delete_device(device_id)
        logger.info("Deleted device %s", device_id)

    def recover_stale_syncs(
        self,
        timeout: timedelta,
        now: datetime | None = None,
    ) -> list[ConnectedDevice]:
        """
        Resolve devices stuck in ``syncing`` for longer than ``timeout`` to ``error``.

        Returns:
            Devices that were recovered
        """
        now = now or utcnow()
        recovered = []
        for device in self.store.list_devices_with_status({DeviceStatus.SYNCING}):
            started = device.sync_started_at or device.updated_at
            if now - started < timeout:
                continue
            updated = self._transition(
                device.id,
                {DeviceStatus.SYNCING},
                lambda d: {
                    "status": DeviceStatus.ERROR,
                    "error_count": d.error_count + 1,
                    "last_error": "Sync did not complete in time",
                },
            )
            if updated is not None:
                logger.warning("Recovered stale sync on device %s", device.id)
                recovered.append(updated)
        return recovered
