"""Tests for DeviceRegistry and the device status state machine."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from fitlink_connector.exceptions import DeviceNotFoundError, NotAuthenticatedError
from fitlink_connector.registry import DeviceRegistry, device_id_for
from fitlink_connector.store import InMemoryDeviceStore
from fitlink_connector.vendor_types import DeviceStatus, DeviceType, OAuthTokens


def tokens(**kwargs):
    return OAuthTokens(access_token="access", **kwargs)


def test_device_ids_are_stable_per_user_and_provider():
    assert device_id_for("user-1", "strava") == device_id_for("user-1", "strava")
    assert device_id_for("user-1", "strava") != device_id_for("user-2", "strava")
    assert device_id_for("user-1", "strava") != device_id_for("user-1", "garmin")


class TestLinking:
    """Placeholder creation and connect/reconnect."""

    def test_mark_pending_auth_creates_placeholder(self, registry):
        device = registry.mark_pending_auth("user-1", "garmin")

        assert device.status == DeviceStatus.PENDING_AUTH
        assert device.display_name == "Garmin Connect"
        assert device.device_type == DeviceType.SMARTWATCH
        assert registry.get("user-1", device.id) == device

    def test_connect_creates_connected_device(self, registry):
        device = registry.connect(
            "user-1", "strava", tokens(scopes=["read", "read"], provider_user_id="athlete-9")
        )

        assert device.status == DeviceStatus.CONNECTED
        assert device.provider_user_id == "athlete-9"
        assert device.scopes == ["read"]
        assert device.connected_at is not None

    def test_connect_after_pending_auth_reuses_device(self, registry):
        pending = registry.mark_pending_auth("user-1", "strava")

        device = registry.connect("user-1", "strava", tokens())

        assert device.id == pending.id
        assert device.status == DeviceStatus.CONNECTED
        assert len(registry.list_for_user("user-1")) == 1

    def test_reconnect_clears_error(self, registry):
        device = registry.connect("user-1", "strava", tokens(scopes=["read"]))
        registry.begin_sync(device.id)
        registry.fail_sync(device.id, "Token revoked", credentials_invalid=True)

        device = registry.connect("user-1", "strava", tokens())

        assert device.status == DeviceStatus.CONNECTED
        assert device.last_error is None
        # Scopes survive a token response without them
        assert device.scopes == ["read"]

    def test_reconnect_while_syncing_keeps_syncing(self, registry):
        device = registry.connect("user-1", "strava", tokens())
        registry.begin_sync(device.id)

        device = registry.connect("user-1", "strava", tokens())

        assert device.status == DeviceStatus.SYNCING

    def test_pending_auth_keeps_connected_status(self, registry):
        device = registry.connect("user-1", "strava", tokens())

        again = registry.mark_pending_auth("user-1", "strava")

        assert again.id == device.id
        assert again.status == DeviceStatus.CONNECTED

    def test_pending_auth_after_disconnect(self, registry):
        device = registry.connect("user-1", "strava", tokens())
        registry.disconnect("user-1", device.id)

        again = registry.mark_pending_auth("user-1", "strava")

        assert again.status == DeviceStatus.PENDING_AUTH


class TestOwnership:
    """Devices are only visible to their owner."""

    def test_get_requires_user(self, registry):
        with pytest.raises(NotAuthenticatedError):
            registry.get(None, "anything")
        with pytest.raises(NotAuthenticatedError):
            registry.list_for_user("")

    def test_other_users_device_is_not_found(self, registry):
        device = registry.connect("owner", "strava", tokens())

        with pytest.raises(DeviceNotFoundError):
            registry.get("intruder", device.id)
        with pytest.raises(DeviceNotFoundError):
            registry.disconnect("intruder", device.id)

    def test_list_is_per_user(self, registry):
        registry.connect("user-1", "strava", tokens())
        registry.connect("user-1", "polar", tokens())
        registry.connect("user-2", "strava", tokens())

        assert {d.provider.value for d in registry.list_for_user("user-1")} == {"strava", "polar"}
        assert len(registry.list_for_user("user-2")) == 1


class TestTransitions:
    """Sync transitions are compare-and-set."""

    def test_begin_sync_only_once(self, registry):
        device = registry.connect("user-1", "strava", tokens())

        first = registry.begin_sync(device.id)
        second = registry.begin_sync(device.id)

        assert first.status == DeviceStatus.SYNCING
        assert first.sync_started_at is not None
        assert second is None

    def test_begin_sync_from_error(self, registry):
        device = registry.connect("user-1", "strava", tokens())
        registry.begin_sync(device.id)
        registry.fail_sync(device.id, "boom")

        assert registry.begin_sync(device.id) is not None

    def test_begin_sync_not_allowed_when_disconnected(self, registry):
        device = registry.connect("user-1", "strava", tokens())
        registry.disconnect("user-1", device.id)

        assert registry.begin_sync(device.id) is None

    def test_complete_and_fail_require_syncing(self, registry):
        device = registry.connect("user-1", "strava", tokens())

        assert registry.complete_sync(device.id) is None
        assert registry.fail_sync(device.id, "boom") is None

    def test_fail_sync_counts_errors(self, registry):
        device = registry.connect("user-1", "strava", tokens())
        for _ in range(3):
            registry.begin_sync(device.id)
            failed = registry.fail_sync(device.id, "boom")

        assert failed.status == DeviceStatus.ERROR
        assert failed.error_count == 3
        assert failed.last_error == "boom"

    def test_complete_sync_resets_errors(self, registry):
        device = registry.connect("user-1", "strava", tokens())
        registry.begin_sync(device.id)
        registry.fail_sync(device.id, "boom")
        registry.begin_sync(device.id)

        done = registry.complete_sync(device.id)

        assert done.status == DeviceStatus.CONNECTED
        assert done.error_count == 0
        assert done.last_sync_at is not None

    def test_disconnect_is_idempotent(self, registry):
        device = registry.connect("user-1", "strava", tokens())
        registry.begin_sync(device.id)

        first = registry.disconnect("user-1", device.id)
        second = registry.disconnect("user-1", device.id)

        assert first.status == DeviceStatus.DISCONNECTED
        assert second.status == DeviceStatus.DISCONNECTED

    def test_delete(self, registry):
        device = registry.connect("user-1", "strava", tokens())

        registry.delete("user-1", device.id)

        with pytest.raises(DeviceNotFoundError):
            registry.get("user-1", device.id)

    def test_only_one_concurrent_claim_wins(self, registry):
        device = registry.connect("user-1", "strava", tokens())

        with ThreadPoolExecutor(max_workers=8) as pool:
            claims = list(pool.map(lambda _: registry.begin_sync(device.id), range(16)))

        assert sum(c is not None for c in claims) == 1

    def test_gives_up_when_every_write_loses(self):
        class LosingStore(InMemoryDeviceStore):
            def replace_device_if_status(self, device, expected):
                return False

        registry = DeviceRegistry(LosingStore())
        device = registry.connect("user-1", "strava", tokens())

        assert registry.begin_sync(device.id) is None
