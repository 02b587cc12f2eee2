"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from fitlink_connector.config import Settings
from fitlink_connector.vendor_types import Provider


def test_defaults():
    settings = Settings.from_env({})

    assert settings.local_mode is False
    assert settings.dynamodb_table == "fitlink"
    assert settings.sync_timeout_seconds == 5.0
    assert settings.stale_sync_minutes == 10
    assert settings.providers == {}


def test_from_env():
    settings = Settings.from_env({
        "LOCAL_MODE": "true",
        "DYNAMODB_TABLE": "fitlink-prod",
        "SYNC_TIMEOUT_SECONDS": "2.5",
        "AUTH_FLOW_TTL_MINUTES": "5",
        "STRAVA_CLIENT_ID": "strava-id",
        "STRAVA_CLIENT_SECRET": "strava-secret",
        "GOOGLE_FIT_CLIENT_ID": "google-id",
        # Missing secret: not configured
        "GARMIN_CLIENT_ID": "garmin-id",
    })

    assert settings.local_mode is True
    assert settings.dynamodb_table == "fitlink-prod"
    assert settings.sync_timeout_seconds == 2.5
    assert settings.auth_flow_ttl_minutes == 5
    assert settings.credentials_for("strava").client_secret == "strava-secret"
    assert settings.credentials_for(Provider.GARMIN) is None
    assert settings.credentials_for(Provider.GOOGLE_FIT) is None


@pytest.mark.parametrize("value", ["1", "yes", "ON", " True "])
def test_local_mode_flag(value):
    assert Settings.from_env({"LOCAL_MODE": value}).local_mode is True


def test_blank_values_fall_back_to_defaults():
    assert Settings.from_env({"DYNAMODB_TABLE": ""}).dynamodb_table == "fitlink"


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings.from_env({"SYNC_TIMEOUT_SECONDS": "0"})
    with pytest.raises(ValidationError):
        Settings.from_env({"AUTH_FLOW_TTL_MINUTES": "120"})
