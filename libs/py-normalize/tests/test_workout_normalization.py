"""Tests for workout normalization across vendor shapes."""

import copy
from datetime import datetime, timedelta, timezone

from fitlink_normalize import HealthDataNormalizer, Provider, normalize_workout


def test_garmin_activity():
    workout = normalize_workout(
        {
            "activityId": 987,
            "startTimeInSeconds": 1705305600,
            "durationInSeconds": 1800,
            "activityType": "CYCLING",
            "distanceInMeters": 15000,
            "activeKilocalories": 400,
            "averageHeartRateInBeatsPerMinute": 140,
        },
        provider="garmin",
    )

    assert workout.id == "987"
    assert workout.provider == Provider.GARMIN
    assert workout.activity_type == "cycling"
    assert workout.start_time == datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)
    assert workout.end_time == workout.start_time + timedelta(minutes=30)
    assert workout.duration_seconds == 1800
    assert workout.calories_burned == 400
    assert workout.avg_heart_rate == 140
    assert workout.avg_pace == "2:00 /km"


def test_whoop_workout_with_score():
    workout = normalize_workout({
        "id": "w1",
        "start": "2024-01-15T06:00:00Z",
        "end": "2024-01-15T07:00:00Z",
        "sport_id": 1,
        "score": {
            "kilojoule": 2092,
            "average_heart_rate": 130,
            "max_heart_rate": 170,
            "zone_duration": {
                "zone_one_milli": 600_000,
                "zone_two_milli": 1_200_000,
            },
        },
    })

    assert workout.duration_seconds == 3600
    assert workout.calories_burned == 500.0
    assert workout.avg_heart_rate == 130
    assert workout.max_heart_rate == 170
    assert workout.zones.zone1_minutes == 10
    assert workout.zones.zone2_minutes == 20
    assert workout.zones.zone5_minutes == 0


def test_camel_case_generic_workout():
    workout = normalize_workout({
        "startTime": "2024-01-15T18:00:00+02:00",
        "endTime": "2024-01-15T19:00:00+02:00",
        "activityType": "Yoga",
        "zones": {"zone1Minutes": 40, "zone2Minutes": 20},
    })

    assert workout.activity_type == "yoga"
    assert workout.start_time == datetime(2024, 1, 15, 16, 0, tzinfo=timezone.utc)
    assert workout.zones.zone1_minutes == 40
    assert workout.distance_meters is None
    assert workout.avg_pace is None


def test_only_start_is_required():
    workout = normalize_workout({"start_time": "2024-01-15T06:00:00Z"})

    assert workout is not None
    assert workout.duration_seconds == 0
    assert workout.activity_type == "unknown"


def test_end_before_start_is_clamped():
    workout = normalize_workout({
        "start_time": "2024-01-15T06:00:00Z",
        "end_time": "2024-01-15T05:00:00Z",
    })

    assert workout.end_time == workout.start_time
    assert workout.duration_seconds == 0


def test_missing_id_is_derived_from_content():
    raw = {"start_time": "2024-01-15T06:00:00Z", "duration": 600}

    first = normalize_workout(raw)
    second = normalize_workout(dict(raw))
    other = normalize_workout({**raw, "duration": 700})

    assert first.id == second.id
    assert first.id != other.id


def test_identical_input_gives_identical_workout():
    raw = {
        "start": "2024-01-15T06:00:00Z",
        "end": "2024-01-15T07:00:00Z",
        "sport_id": 1,
        "score": {
            "kilojoule": 2092,
            "average_heart_rate": 142,
            "max_heart_rate": 175,
            "distance_meter": 30000,
            "altitude_gain_meter": 250,
            "zone_duration": {
                "zone_one_milli": 600000,
                "zone_two_milli": 1200000,
                "zone_three_milli": 1200000,
                "zone_four_milli": 480000,
                "zone_five_milli": 120000,
            },
        },
        "average_cadence": 88,
        "average_watts": 210,
    }

    first = normalize_workout(raw, user_id="user-1", device_id="device-1", provider="whoop")
    second = normalize_workout(copy.deepcopy(raw), user_id="user-1", device_id="device-1", provider="whoop")

    assert first == second
    assert first.zones.zone2_minutes == 20
    assert first.calories_burned == 500.0
    assert first.avg_power == 210


def test_unusable_payloads_return_none():
    assert normalize_workout(None) is None
    assert normalize_workout(["not", "a", "dict"]) is None
    assert normalize_workout({"distance": 1000}) is None
    assert normalize_workout({"start_time": "yesterday-ish"}) is None


def test_normalizer_method_stamps_owner():
    workout = HealthDataNormalizer().normalize_workout(
        {"id": 5, "start_time": "2024-01-15T06:00:00Z"},
        user_id="user-1",
        device_id="dev-1",
        provider=Provider.POLAR,
    )

    assert workout.user_id == "user-1"
    assert workout.device_id == "dev-1"
    assert workout.provider == Provider.POLAR
