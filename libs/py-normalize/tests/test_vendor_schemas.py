"""Tests for vendor payload parsing."""

from datetime import datetime, timezone
from typing import get_args

import pytest

from fitlink_normalize.normalizer import READING_EXTRACTORS
from fitlink_normalize.schema import HealthDataType, Provider, to_utc
from fitlink_normalize.vendor_schemas import (
    GarminActivity,
    GenericSample,
    GenericWorkout,
    UnknownPayload,
    VendorPayload,
    WhoopRecovery,
    WhoopSleep,
    WhoopWorkout,
    parse_payload,
)


def test_every_variant_has_an_extractor():
    assert set(get_args(VendorPayload)) == set(READING_EXTRACTORS)


def test_whoop_shapes_are_picked_by_data_type():
    record = {"id": 1, "start": "2024-01-15T06:00:00Z", "end": "2024-01-15T07:00:00Z"}

    assert isinstance(parse_payload(record, Provider.WHOOP, HealthDataType.SLEEP), WhoopSleep)
    assert isinstance(parse_payload(record, Provider.WHOOP, HealthDataType.WORKOUT), WhoopWorkout)

    recovery = {"created_at": "2024-01-15T07:00:00Z", "score": {"hrv_rmssd_milli": 40}}
    assert isinstance(parse_payload(recovery, "whoop", "hrv"), WhoopRecovery)


def test_garmin_activity_only_for_workouts():
    record = {"activityId": 1, "startTimeInSeconds": 1705305600}

    assert isinstance(parse_payload(record, Provider.GARMIN, HealthDataType.WORKOUT), GarminActivity)
    assert isinstance(parse_payload(record, Provider.GARMIN, HealthDataType.STEPS), UnknownPayload)


def test_garmin_daily_without_time_is_unknown():
    record = {"summaryId": "x", "steps": 100}

    assert isinstance(parse_payload(record, Provider.GARMIN, HealthDataType.STEPS), UnknownPayload)


def test_generic_workout_needs_a_start_time():
    workout = {"id": "w1", "start_time": "2024-01-15T06:00:00Z", "duration": 600}

    assert isinstance(parse_payload(workout, Provider.POLAR, HealthDataType.WORKOUT), GenericWorkout)
    assert isinstance(parse_payload({"id": "w1"}, Provider.POLAR, HealthDataType.WORKOUT), UnknownPayload)
    # Only workouts use the workout shape
    assert isinstance(parse_payload(workout, Provider.POLAR, HealthDataType.CALORIES), UnknownPayload)


def test_unknown_provider_falls_back_to_generic():
    record = {"timestamp": "2024-01-15T08:00:00Z", "value": 1}

    assert isinstance(parse_payload(record, "acme", HealthDataType.STEPS), GenericSample)


def test_non_dict_is_unknown():
    payload = parse_payload(42, Provider.POLAR, HealthDataType.STEPS)

    assert isinstance(payload, UnknownPayload)
    assert payload.raw == 42


@pytest.mark.parametrize(
    "value",
    [
        1705305600,
        1705305600000,
        1705305600000000000,
        "1705305600",
        "2024-01-15T08:00:00Z",
        "2024-01-15T09:00:00+01:00",
        datetime(2024, 1, 15, 8, 0),
    ],
)
def test_to_utc_formats(value):
    assert to_utc(value) == datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [None, "", True, float("inf"), "garbage"])
def test_to_utc_rejects(value):
    with pytest.raises(ValueError):
        to_utc(value)
