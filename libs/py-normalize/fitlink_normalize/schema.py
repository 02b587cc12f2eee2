"""Canonical schema for FitLink wearable data."""

import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


class Provider(str, Enum):
    """Supported wearable providers."""

    STRAVA = "strava"
    GARMIN = "garmin"
    FITBIT = "fitbit"
    APPLE_HEALTH = "apple_health"
    POLAR = "polar"
    WAHOO = "wahoo"
    WHOOP = "whoop"
    OURA = "oura"
    SUUNTO = "suunto"
    COROS = "coros"
    GOOGLE_FIT = "google_fit"


class HealthDataType(str, Enum):
    """Canonical health metric types."""

    HEART_RATE = "heart_rate"
    STEPS = "steps"
    CALORIES = "calories"
    DISTANCE = "distance"
    SLEEP = "sleep"
    WORKOUT = "workout"
    WEIGHT = "weight"
    BLOOD_PRESSURE = "blood_pressure"
    SPO2 = "spo2"
    HRV = "hrv"
    RESTING_HEART_RATE = "resting_heart_rate"
    ACTIVE_MINUTES = "active_minutes"
    ELEVATION = "elevation"
    CADENCE = "cadence"
    POWER = "power"
    PACE = "pace"
    VO2MAX = "vo2max"
    STRESS_LEVEL = "stress_level"
    BODY_BATTERY = "body_battery"
    TEMPERATURE = "temperature"
    HYDRATION = "hydration"
    NUTRITION = "nutrition"


def to_utc(value: Any) -> datetime:
    """
    Parse a timestamp into a timezone-aware UTC datetime.

    Accepts datetimes, ISO8601 strings, dates and unix epochs. Epoch values
    larger than 1e11 are treated as milliseconds, larger than 1e14 as
    nanoseconds. Naive datetimes are assumed to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, bool):
        raise ValueError(f"Invalid timestamp format: {value}")
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Invalid timestamp format: {value}")
        seconds = float(value)
        if seconds > 1e14:
            seconds /= 1e9
        elif seconds > 1e11:
            seconds /= 1e3
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return to_utc(int(text))
        from dateutil import parser

        dt = parser.isoparse(text)
    else:
        raise ValueError(f"Invalid timestamp format: {value}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class WearableHealthData(BaseModel):
    """
    Canonical health data sample.

    Exactly one of ``value_numeric``, ``value_text`` or ``value_json`` is set.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    device_id: str
    data_type: HealthDataType
    timestamp: datetime
    value_numeric: float | None = None
    value_text: str | None = None
    value_json: dict[str, Any] | None = None
    unit: str | None = None
    quality_score: float | None = Field(None, ge=0, le=1)
    source_workout_id: str | None = None
    raw_data: dict[str, Any] | None = None
    synced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("timestamp", "synced_at", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> datetime:
        """Normalize timestamps to UTC."""
        return to_utc(v)

    @field_validator("value_numeric")
    @classmethod
    def finite_value(cls, v: float | None) -> float | None:
        """Reject NaN and infinity."""
        if v is not None and not math.isfinite(v):
            raise ValueError("value_numeric must be finite")
        return v

    @model_validator(mode="after")
    def exactly_one_value(self) -> "WearableHealthData":
        """Enforce the numeric XOR text XOR structured value invariant."""
        populated = [
            v for v in (self.value_numeric, self.value_text, self.value_json)
            if v is not None
        ]
        if len(populated) != 1:
            raise ValueError(
                "exactly one of value_numeric, value_text, value_json must be set"
            )
        return self

    def dedup_key(self) -> str:
        """Key under which re-synced samples replace each other."""
        return (
            f"{self.user_id}:{self.data_type.value}:{self.device_id}:"
            f"{self.timestamp.isoformat()}"
        )


class HeartRateZones(BaseModel):
    """Minutes spent in each heart rate zone."""

    zone1_minutes: float = 0
    zone2_minutes: float = 0
    zone3_minutes: float = 0
    zone4_minutes: float = 0
    zone5_minutes: float = 0


class NormalizedWorkout(BaseModel):
    """Provider-independent workout summary."""

    id: str
    user_id: str | None = None
    device_id: str | None = None
    provider: Provider | None = None
    start_time: datetime
    end_time: datetime
    duration_seconds: float = Field(..., ge=0)
    activity_type: str = "unknown"
    distance_meters: float | None = None
    calories_burned: float | None = None
    avg_heart_rate: float | None = None
    max_heart_rate: float | None = None
    elevation_gain_meters: float | None = None
    avg_pace: str | None = None
    avg_cadence: float | None = None
    avg_power: float | None = None
    zones: HeartRateZones | None = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


class DailyValue(BaseModel):
    """One day of an aggregated metric."""

    date: date
    value: float
