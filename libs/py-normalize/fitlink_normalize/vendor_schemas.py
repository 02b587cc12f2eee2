"""
Vendor-specific payload shapes.

Every raw record coming back from a provider is parsed into exactly one
variant of ``VendorPayload``. Variants are tried in the order listed for the
provider; ``GenericWorkout`` and ``GenericSample`` are the provider-agnostic
shapes and ``UnknownPayload`` the fallback that never fails.
"""

from typing import Any, ClassVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .schema import HealthDataType, Provider


class _VendorModel(BaseModel):
    """Base for vendor payload variants."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    # Data types this shape can carry; empty means any.
    data_types: ClassVar[frozenset[HealthDataType]] = frozenset()

    @classmethod
    def accepts(cls, data_type: HealthDataType) -> bool:
        return not cls.data_types or data_type in cls.data_types


class GenericSample(_VendorModel):
    """Already-flat sample: ``{"timestamp": ..., "value": ..., "unit": ...}``."""

    timestamp: Any
    value: Any
    unit: str | None = None

    @model_validator(mode="before")
    @classmethod
    def pick_timestamp(cls, data: Any) -> Any:
        if isinstance(data, dict) and "timestamp" not in data:
            for key in ("time", "dateTime", "date", "startTime", "start_time"):
                if key in data:
                    return {**data, "timestamp": data[key]}
        return data


# Keys that mark a record as a workout when no vendor shape matched.
WORKOUT_START_KEYS = ("start_time", "startTime", "start_date", "start", "startDate",
                      "startTimeInSeconds", "startTimeMillis", "startTimeNanos")


class GenericWorkout(_VendorModel):
    """Workout of any vendor that carries at least a start time."""

    data_types: ClassVar[frozenset[HealthDataType]] = frozenset({
        HealthDataType.WORKOUT,
    })

    @model_validator(mode="before")
    @classmethod
    def has_start(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not any(
            data.get(key) not in (None, "") for key in WORKOUT_START_KEYS
        ):
            raise ValueError("workout start time required")
        return data


class GoogleFitDataPoint(_VendorModel):
    """Google Fit dataset point with nanosecond timestamps."""

    start_time_nanos: int | str = Field(alias="startTimeNanos")
    end_time_nanos: int | str | None = Field(None, alias="endTimeNanos")
    data_type_name: str | None = Field(None, alias="dataTypeName")
    value: list[dict[str, Any]]


class StravaActivity(_VendorModel):
    """Strava activity summary."""

    data_types: ClassVar[frozenset[HealthDataType]] = frozenset({
        HealthDataType.WORKOUT,
        HealthDataType.DISTANCE,
        HealthDataType.HEART_RATE,
        HealthDataType.CALORIES,
        HealthDataType.ELEVATION,
        HealthDataType.PACE,
        HealthDataType.CADENCE,
        HealthDataType.POWER,
    })

    id: int | str
    start_date: str
    elapsed_time: float | None = None
    moving_time: float | None = None
    sport_type: str | None = None
    type: str | None = None
    distance: float | None = None
    average_heartrate: float | None = None
    max_heartrate: float | None = None
    total_elevation_gain: float | None = None
    average_cadence: float | None = None
    average_watts: float | None = None
    calories: float | None = None


class GarminDailySummary(_VendorModel):
    """Garmin Health API daily summary."""

    summary_id: int | str = Field(alias="summaryId")
    calendar_date: str | None = Field(None, alias="calendarDate")
    start_time_in_seconds: int | None = Field(None, alias="startTimeInSeconds")
    steps: int | None = None
    active_kilocalories: float | None = Field(None, alias="activeKilocalories")
    distance_in_meters: float | None = Field(None, alias="distanceInMeters")
    resting_heart_rate: float | None = Field(
        None, alias="restingHeartRateInBeatsPerMinute"
    )
    average_heart_rate: float | None = Field(
        None, alias="averageHeartRateInBeatsPerMinute"
    )
    average_stress_level: float | None = Field(None, alias="averageStressLevel")
    body_battery: float | None = Field(None, alias="bodyBatteryMostRecentValue")

    @model_validator(mode="after")
    def has_time(self) -> "GarminDailySummary":
        if self.calendar_date is None and self.start_time_in_seconds is None:
            raise ValueError("calendarDate or startTimeInSeconds required")
        return self


class GarminActivity(_VendorModel):
    """Garmin Health API activity."""

    data_types: ClassVar[frozenset[HealthDataType]] = frozenset({
        HealthDataType.WORKOUT,
    })

    activity_id: int | str = Field(alias="activityId")
    start_time_in_seconds: int = Field(alias="startTimeInSeconds")
    duration_in_seconds: float | None = Field(None, alias="durationInSeconds")
    activity_type: str | None = Field(None, alias="activityType")


class FitbitTimeSeriesPoint(_VendorModel):
    """Fitbit time series entry; values arrive as strings."""

    date_time: str = Field(alias="dateTime")
    value: str | int | float | dict[str, Any]


class WhoopRecovery(_VendorModel):
    """WHOOP recovery record."""

    data_types: ClassVar[frozenset[HealthDataType]] = frozenset({
        HealthDataType.HRV,
        HealthDataType.RESTING_HEART_RATE,
    })

    created_at: str
    score: dict[str, Any]
    cycle_id: int | str | None = None


class WhoopWorkout(_VendorModel):
    """WHOOP workout record."""

    data_types: ClassVar[frozenset[HealthDataType]] = frozenset({
        HealthDataType.WORKOUT,
        HealthDataType.CALORIES,
        HealthDataType.HEART_RATE,
    })

    id: int | str
    start: str
    end: str | None = None
    sport_id: int | None = None
    score: dict[str, Any] = Field(default_factory=dict)


class WhoopSleep(_VendorModel):
    """WHOOP sleep record."""

    data_types: ClassVar[frozenset[HealthDataType]] = frozenset({
        HealthDataType.SLEEP,
    })

    id: int | str
    start: str
    end: str
    score: dict[str, Any] = Field(default_factory=dict)


class OuraDaily(_VendorModel):
    """Oura daily document (readiness, sleep, activity)."""

    day: str
    score: float | None = None
    steps: int | None = None
    active_calories: float | None = None
    temperature_deviation: float | None = None
    contributors: dict[str, Any] = Field(default_factory=dict)


class AppleHealthSample(_VendorModel):
    """HealthKit quantity sample exported by the companion app."""

    start_date: str = Field(alias="startDate")
    end_date: str | None = Field(None, alias="endDate")
    value: float | str
    unit: str | None = None
    type: str | None = None


class UnknownPayload(BaseModel):
    """Payload that matched no known shape."""

    raw: Any


VendorPayload = Union[
    GenericSample,
    GenericWorkout,
    GoogleFitDataPoint,
    StravaActivity,
    GarminDailySummary,
    GarminActivity,
    FitbitTimeSeriesPoint,
    WhoopRecovery,
    WhoopWorkout,
    WhoopSleep,
    OuraDaily,
    AppleHealthSample,
    UnknownPayload,
]

PROVIDER_SHAPES: dict[Provider, tuple[type[_VendorModel], ...]] = {
    Provider.GOOGLE_FIT: (GoogleFitDataPoint,),
    Provider.STRAVA: (StravaActivity,),
    Provider.GARMIN: (GarminActivity, GarminDailySummary),
    Provider.FITBIT: (FitbitTimeSeriesPoint,),
    Provider.WHOOP: (WhoopSleep, WhoopWorkout, WhoopRecovery),
    Provider.OURA: (OuraDaily,),
    Provider.APPLE_HEALTH: (AppleHealthSample,),
}


def parse_payload(
    raw: Any,
    provider: Provider | str,
    data_type: HealthDataType | str,
) -> VendorPayload:
    """
    Parse one raw record into its vendor payload variant.

    Args:
        raw: Single raw record from the provider
        provider: Provider the record came from
        data_type: Data type that was requested

    Returns:
        The first matching variant, or ``UnknownPayload``
    """
    if not isinstance(raw, dict):
        return UnknownPayload(raw=raw)

    try:
        provider = Provider(provider)
    except ValueError:
        provider = None
    data_type = HealthDataType(data_type)

    candidates = PROVIDER_SHAPES.get(provider, ()) + (GenericWorkout, GenericSample)
    for shape in candidates:
        if not shape.accepts(data_type):
            continue
        try:
            return shape.model_validate(raw)
        except ValidationError:
            continue

    return UnknownPayload(raw=raw)
