"""Per-device sync preferences and the "is a sync due" policy."""

import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from .exceptions import InvalidPreferencesError
from .providers import get_provider_config
from .store import DeviceStore
from .vendor_types import ConnectedDevice, SyncPreferences, utcnow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "auto_sync_enabled",
    "sync_frequency_minutes",
    "data_types_enabled",
    "sync_only_wifi",
    "notify_on_sync",
    "notify_on_error",
    "backfill_days",
})


class SyncPreferencesManager:
    """Stores and validates SyncPreferences."""

    def __init__(self, store: DeviceStore):
        self.store = store

    def get(self, device_id: str) -> SyncPreferences | None:
        return self.store.get_preferences(device_id)

    @staticmethod
    def defaults_for(device: ConnectedDevice) -> SyncPreferences:
        """Auto-sync hourly, all provider data types, notify on errors only."""
        config = get_provider_config(device.provider)
        return SyncPreferences(
            device_id=device.id,
            user_id=device.user_id,
            data_types_enabled=list(config.data_types),
        )

    def ensure_defaults(self, device: ConnectedDevice) -> SyncPreferences:
        """Return the device's preferences, creating defaults if it has none."""
        prefs = self.get(device.id)
        if prefs is None:
            prefs = self.defaults_for(device)
            self.store.put_preferences(prefs)
            logger.debug("Created default sync preferences for device %s", device.id)
        return prefs

    def update(
        self,
        device_id: str,
        partial: dict[str, Any],
        device: ConnectedDevice | None = None,
    ) -> SyncPreferences:
        """
        Merge ``partial`` into the stored preferences.

        Args:
            device_id: Device whose preferences change
            partial: Fields to change; omitted fields keep their value
            device: Used to seed defaults when nothing is stored yet

        Raises:
            InvalidPreferencesError: Unknown fields or values out of range
        """
        unknown = set(partial) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidPreferencesError(
                f"Unknown preference fields: {', '.join(sorted(unknown))}"
            )

        current = self.get(device_id)
        if current is None:
            if device is None:
                raise InvalidPreferencesError(f"No preferences stored for device {device_id}")
            current = self.defaults_for(device)

        try:
            merged = SyncPreferences.model_validate({
                **current.model_dump(),
                **partial,
                "updated_at": utcnow(),
            })
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidPreferencesError(f"Invalid sync preferences: {details}") from e

        self.store.put_preferences(merged)
        return merged

    def delete(self, device_id: str) -> None:
        self.store.delete_preferences(device_id)

    @staticmethod
    def is_sync_due(
        device: ConnectedDevice,
        prefs: SyncPreferences | None,
        now: datetime | None = None,
    ) -> bool:
        """
        Whether the scheduler should sync ``device`` now.

        Requires auto-sync, at least one enabled data type, a syncable status
        and at least ``sync_frequency_minutes`` since the last sync. Devices
        that never synced are due. ``sync_only_wifi`` is not evaluated here;
        network type is only known on the client.
        """
        if prefs is None or not prefs.auto_sync_enabled or not device.is_syncable:
            return False
        if not prefs.data_types_enabled:
            return False
        if device.last_sync_at is None:
            return True
        now = now or utcnow()
        return now - device.last_sync_at >= timedelta(minutes=prefs.sync_frequency_minutes)
