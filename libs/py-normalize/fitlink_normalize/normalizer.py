"""
Core data normalization functionality.

Raw provider records are parsed into a vendor payload variant (see
``vendor_schemas``) and each variant has exactly one reading extractor.
"""

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, NamedTuple
from uuid import NAMESPACE_URL, uuid5

from .aggregation import aggregate_daily
from .schema import (
    DailyValue,
    HealthDataType,
    HeartRateZones,
    NormalizedWorkout,
    Provider,
    WearableHealthData,
    to_utc,
)
from .vendor_schemas import (
    AppleHealthSample,
    FitbitTimeSeriesPoint,
    GarminActivity,
    GarminDailySummary,
    GenericSample,
    GenericWorkout,
    GoogleFitDataPoint,
    OuraDaily,
    StravaActivity,
    UnknownPayload,
    WhoopRecovery,
    WhoopSleep,
    WhoopWorkout,
    WORKOUT_START_KEYS,
    parse_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_UNITS: dict[HealthDataType, str] = {
    HealthDataType.HEART_RATE: "bpm",
    HealthDataType.RESTING_HEART_RATE: "bpm",
    HealthDataType.STEPS: "count",
    HealthDataType.CALORIES: "kcal",
    HealthDataType.DISTANCE: "m",
    HealthDataType.SLEEP: "min",
    HealthDataType.WEIGHT: "kg",
    HealthDataType.SPO2: "%",
    HealthDataType.HRV: "ms",
    HealthDataType.ACTIVE_MINUTES: "min",
    HealthDataType.ELEVATION: "m",
    HealthDataType.CADENCE: "spm",
    HealthDataType.POWER: "W",
    HealthDataType.VO2MAX: "ml/kg/min",
    HealthDataType.STRESS_LEVEL: "score",
    HealthDataType.BODY_BATTERY: "score",
    HealthDataType.TEMPERATURE: "degC",
    HealthDataType.HYDRATION: "ml",
}

PLAUSIBLE_RANGES: dict[HealthDataType, tuple[float, float]] = {
    HealthDataType.HEART_RATE: (20, 300),
    HealthDataType.RESTING_HEART_RATE: (20, 200),
    HealthDataType.STEPS: (0, 200_000),
    HealthDataType.CALORIES: (0, 20_000),
    HealthDataType.DISTANCE: (0, 1_000_000),
    HealthDataType.SLEEP: (0, 1440),
    HealthDataType.WEIGHT: (20, 400),
    HealthDataType.SPO2: (50, 100),
    HealthDataType.HRV: (0, 500),
    HealthDataType.ACTIVE_MINUTES: (0, 1440),
    HealthDataType.CADENCE: (0, 300),
    HealthDataType.POWER: (0, 3000),
    HealthDataType.VO2MAX: (10, 100),
    HealthDataType.STRESS_LEVEL: (0, 100),
    HealthDataType.BODY_BATTERY: (0, 100),
    HealthDataType.TEMPERATURE: (-10, 45),
}

# Envelope keys that wrap a list of records.
ENVELOPE_KEYS = (
    "data", "items", "records", "samples", "points", "activities", "workouts",
    "bucket", "dataset", "point", "activities-heart", "activities-steps",
)

START_KEYS = WORKOUT_START_KEYS
END_KEYS = ("end_time", "endTime", "end", "endDate", "endTimeMillis", "endTimeNanos")
DURATION_KEYS = ("duration_seconds", "durationSeconds", "elapsed_time",
                 "durationInSeconds", "duration")
ACTIVITY_KEYS = ("activity_type", "activityType", "sport_type", "type",
                 "activityName", "sport_id")
DISTANCE_KEYS = ("distance_meters", "distanceMeters", "distanceInMeters",
                 "distance", "distance_meter")
CALORIE_KEYS = ("calories_burned", "caloriesBurned", "calories", "activeKilocalories")
AVG_HR_KEYS = ("avg_heart_rate", "avgHeartRate", "average_heartrate",
               "averageHeartRateInBeatsPerMinute", "average_heart_rate")
MAX_HR_KEYS = ("max_heart_rate", "maxHeartRate", "max_heartrate",
               "maxHeartRateInBeatsPerMinute")
ELEVATION_KEYS = ("elevation_gain_meters", "elevationGainMeters", "total_elevation_gain",
                  "elevationGainInMeters", "altitude_gain_meter")
CADENCE_KEYS = ("avg_cadence", "avgCadence", "average_cadence",
                "averageRunCadenceInStepsPerMinute", "averageBikeCadenceInRoundsPerMinute")
POWER_KEYS = ("avg_power", "avgPower", "average_watts", "averagePowerInWatts")
PACE_KEYS = ("avg_pace", "avgPace")

WHOOP_ZONE_KEYS = ("zone_one_milli", "zone_two_milli", "zone_three_milli",
                   "zone_four_milli", "zone_five_milli")

KJ_PER_KCAL = 4.184


class Reading(NamedTuple):
    """Single value pulled out of a vendor payload."""

    timestamp: Any
    value: Any
    unit: str | None = None
    precise: bool = True
    source_workout_id: str | None = None


def _as_float(value: Any) -> float | None:
    """Coerce a vendor value to a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _first(raw: dict[str, Any], keys: Iterable[str]) -> Any:
    """Return the first present value for ``keys`` in ``raw`` or its ``score``."""
    scopes = [raw]
    if isinstance(raw.get("score"), dict):
        scopes.append(raw["score"])
    for scope in scopes:
        for key in keys:
            value = scope.get(key)
            if value is not None and value != "":
                return value
    return None


def _format_pace(distance_m: float | None, duration_s: float) -> str | None:
    """Format pace as ``m:ss /km``."""
    if not distance_m or distance_m <= 0 or duration_s <= 0:
        return None
    seconds_per_km = round(duration_s / (distance_m / 1000))
    minutes, seconds = divmod(seconds_per_km, 60)
    return f"{minutes}:{seconds:02d} /km"


def _content_id(raw: Any) -> str:
    """Deterministic identifier derived from payload content."""
    canonical = json.dumps(raw, sort_keys=True, default=str)
    return str(uuid5(NAMESPACE_URL, f"fitlink:workout:{canonical}"))


def _parse_zones(raw: dict[str, Any]) -> HeartRateZones | None:
    zones = raw.get("zones")
    if isinstance(zones, dict):
        minutes = []
        for n in range(1, 6):
            value = zones.get(f"zone{n}Minutes", zones.get(f"zone{n}_minutes"))
            minutes.append(_as_float(value) or 0.0)
        return HeartRateZones(**{f"zone{n}_minutes": m for n, m in enumerate(minutes, 1)})

    zone_duration = _first(raw, ("zone_duration", "zone_durations"))
    if isinstance(zone_duration, dict):
        return HeartRateZones(**{
            f"zone{n}_minutes": (_as_float(zone_duration.get(key)) or 0.0) / 60000
            for n, key in enumerate(WHOOP_ZONE_KEYS, 1)
        })
    return None


def normalize_workout(
    raw: Any,
    user_id: str | None = None,
    device_id: str | None = None,
    provider: Provider | str | None = None,
) -> NormalizedWorkout | None:
    """
    Normalize a workout payload of any supported vendor shape.

    Only a start time is mandatory. Returns None instead of raising when the
    payload does not carry enough information.

    Args:
        raw: Raw workout record
        user_id: Owning user, if known
        device_id: Source device, if known
        provider: Source provider, if known

    Returns:
        NormalizedWorkout or None
    """
    if not isinstance(raw, dict):
        return None

    try:
        start_value = _first(raw, START_KEYS)
        if start_value is None:
            return None
        start = to_utc(start_value)

        end_value = _first(raw, END_KEYS)
        duration = _as_float(_first(raw, DURATION_KEYS))
        if end_value is not None:
            end = to_utc(end_value)
        elif duration is not None and duration > 0:
            end = start + timedelta(seconds=duration)
        else:
            end = start
        if end < start:
            end = start
        duration_seconds = (end - start).total_seconds()

        distance = _as_float(_first(raw, DISTANCE_KEYS))
        calories = _as_float(_first(raw, CALORIE_KEYS))
        if calories is None:
            kilojoule = _as_float(_first(raw, ("kilojoule", "kilojoules")))
            if kilojoule is not None:
                calories = round(kilojoule / KJ_PER_KCAL, 1)

        activity = _first(raw, ACTIVITY_KEYS)
        pace = _first(raw, PACE_KEYS)

        try:
            provider = Provider(provider) if provider is not None else None
        except ValueError:
            provider = None

        raw_id = raw.get("id", raw.get("activityId"))
        workout_id = str(raw_id) if raw_id is not None else _content_id(raw)

        return NormalizedWorkout(
            id=workout_id,
            user_id=user_id,
            device_id=device_id,
            provider=provider,
            start_time=start,
            end_time=end,
            duration_seconds=duration_seconds,
            activity_type=str(activity).lower() if activity is not None else "unknown",
            distance_meters=distance,
            calories_burned=calories,
            avg_heart_rate=_as_float(_first(raw, AVG_HR_KEYS)),
            max_heart_rate=_as_float(_first(raw, MAX_HR_KEYS)),
            elevation_gain_meters=_as_float(_first(raw, ELEVATION_KEYS)),
            avg_pace=str(pace) if pace is not None else _format_pace(distance, duration_seconds),
            avg_cadence=_as_float(_first(raw, CADENCE_KEYS)),
            avg_power=_as_float(_first(raw, POWER_KEYS)),
            zones=_parse_zones(raw),
            raw_data=raw,
        )
    except (ValueError, TypeError, OverflowError) as e:
        logger.debug("Discarding unparseable workout payload: %s", e)
        return None


# ============================================================================
# Reading extractors, one per payload variant
# ============================================================================

def _workout_reading(raw: dict[str, Any], provider: Provider | None) -> list[Reading]:
    workout = normalize_workout(raw, provider=provider)
    if workout is None:
        return []
    return [Reading(
        timestamp=workout.start_time,
        value=workout.model_dump(mode="json", exclude={"raw_data", "user_id", "device_id"}),
        source_workout_id=workout.id,
    )]


def _from_generic(payload: GenericSample, data_type: HealthDataType) -> list[Reading]:
    if payload.value is None:
        return []
    return [Reading(payload.timestamp, payload.value, payload.unit)]


def _from_generic_workout(payload: GenericWorkout, data_type: HealthDataType) -> list[Reading]:
    return _workout_reading(payload.model_dump(by_alias=True), None)


def _from_google_fit(payload: GoogleFitDataPoint, data_type: HealthDataType) -> list[Reading]:
    if not payload.value:
        return []
    point = payload.value[0]
    value = next(
        (point[k] for k in ("fpVal", "intVal", "stringVal") if point.get(k) is not None),
        None,
    )
    if value is None:
        return []
    return [Reading(int(payload.start_time_nanos), value, DEFAULT_UNITS.get(data_type))]


def _from_strava(payload: StravaActivity, data_type: HealthDataType) -> list[Reading]:
    raw = payload.model_dump(by_alias=True)
    if data_type == HealthDataType.WORKOUT:
        return _workout_reading(raw, Provider.STRAVA)

    duration = payload.moving_time or payload.elapsed_time or 0
    values: dict[HealthDataType, Any] = {
        HealthDataType.DISTANCE: payload.distance,
        HealthDataType.HEART_RATE: payload.average_heartrate,
        HealthDataType.CALORIES: payload.calories,
        HealthDataType.ELEVATION: payload.total_elevation_gain,
        HealthDataType.PACE: _format_pace(payload.distance, duration),
        HealthDataType.CADENCE: payload.average_cadence,
        HealthDataType.POWER: payload.average_watts,
    }
    value = values.get(data_type)
    if value is None:
        return []
    unit = None if data_type == HealthDataType.PACE else DEFAULT_UNITS.get(data_type)
    return [Reading(payload.start_date, value, unit, source_workout_id=str(payload.id))]


def _from_garmin_daily(payload: GarminDailySummary, data_type: HealthDataType) -> list[Reading]:
    values: dict[HealthDataType, Any] = {
        HealthDataType.STEPS: payload.steps,
        HealthDataType.CALORIES: payload.active_kilocalories,
        HealthDataType.DISTANCE: payload.distance_in_meters,
        HealthDataType.RESTING_HEART_RATE: payload.resting_heart_rate,
        HealthDataType.HEART_RATE: payload.average_heart_rate,
        HealthDataType.STRESS_LEVEL: payload.average_stress_level,
        HealthDataType.BODY_BATTERY: payload.body_battery,
    }
    value = values.get(data_type)
    if value is None:
        return []
    if payload.start_time_in_seconds is not None:
        return [Reading(payload.start_time_in_seconds, value, DEFAULT_UNITS.get(data_type))]
    return [Reading(payload.calendar_date, value, DEFAULT_UNITS.get(data_type), precise=False)]


def _from_garmin_activity(payload: GarminActivity, data_type: HealthDataType) -> list[Reading]:
    return _workout_reading(payload.model_dump(by_alias=True), Provider.GARMIN)


def _from_fitbit(payload: FitbitTimeSeriesPoint, data_type: HealthDataType) -> list[Reading]:
    value = payload.value
    if isinstance(value, dict):
        if data_type in (HealthDataType.HEART_RATE, HealthDataType.RESTING_HEART_RATE):
            value = value.get("restingHeartRate")
            if value is None:
                return []
    return [Reading(payload.date_time, value, DEFAULT_UNITS.get(data_type), precise=False)]


def _from_whoop_recovery(payload: WhoopRecovery, data_type: HealthDataType) -> list[Reading]:
    key = {
        HealthDataType.HRV: "hrv_rmssd_milli",
        HealthDataType.RESTING_HEART_RATE: "resting_heart_rate",
    }[data_type]
    value = payload.score.get(key)
    if value is None:
        return []
    return [Reading(payload.created_at, value, DEFAULT_UNITS.get(data_type))]


def _from_whoop_workout(payload: WhoopWorkout, data_type: HealthDataType) -> list[Reading]:
    if data_type == HealthDataType.WORKOUT:
        return _workout_reading(payload.model_dump(by_alias=True), Provider.WHOOP)
    if data_type == HealthDataType.CALORIES:
        kilojoule = _as_float(payload.score.get("kilojoule"))
        if kilojoule is None:
            return []
        value = round(kilojoule / KJ_PER_KCAL, 1)
    else:
        value = payload.score.get("average_heart_rate")
        if value is None:
            return []
    return [Reading(payload.start, value, DEFAULT_UNITS.get(data_type),
                    source_workout_id=str(payload.id))]


def _from_whoop_sleep(payload: WhoopSleep, data_type: HealthDataType) -> list[Reading]:
    stages = payload.score.get("stage_summary") or {}
    in_bed = _as_float(stages.get("total_in_bed_time_milli"))
    awake = _as_float(stages.get("total_awake_time_milli")) or 0.0
    if in_bed is None:
        in_bed = (to_utc(payload.end) - to_utc(payload.start)).total_seconds() * 1000
    return [Reading(payload.start, round(max(in_bed - awake, 0.0) / 60000, 1), "min")]


def _from_oura(payload: OuraDaily, data_type: HealthDataType) -> list[Reading]:
    values: dict[HealthDataType, Any] = {
        HealthDataType.STEPS: payload.steps,
        HealthDataType.CALORIES: payload.active_calories,
        HealthDataType.TEMPERATURE: payload.temperature_deviation,
        HealthDataType.SLEEP: payload.score,
    }
    value = values.get(data_type)
    if value is None:
        return []
    unit = "score" if data_type == HealthDataType.SLEEP else DEFAULT_UNITS.get(data_type)
    return [Reading(payload.day, value, unit, precise=False)]


def _from_apple_health(payload: AppleHealthSample, data_type: HealthDataType) -> list[Reading]:
    return [Reading(payload.start_date, payload.value, payload.unit or DEFAULT_UNITS.get(data_type))]


def _from_unknown(payload: UnknownPayload, data_type: HealthDataType) -> list[Reading]:
    return []


READING_EXTRACTORS: dict[type, Callable[[Any, HealthDataType], list[Reading]]] = {
    GenericSample: _from_generic,
    GenericWorkout: _from_generic_workout,
    GoogleFitDataPoint: _from_google_fit,
    StravaActivity: _from_strava,
    GarminDailySummary: _from_garmin_daily,
    GarminActivity: _from_garmin_activity,
    FitbitTimeSeriesPoint: _from_fitbit,
    WhoopRecovery: _from_whoop_recovery,
    WhoopWorkout: _from_whoop_workout,
    WhoopSleep: _from_whoop_sleep,
    OuraDaily: _from_oura,
    AppleHealthSample: _from_apple_health,
    UnknownPayload: _from_unknown,
}


def iter_records(raw: Any) -> Iterator[Any]:
    """Flatten lists and envelope dicts into individual records."""
    if isinstance(raw, list):
        for item in raw:
            yield from iter_records(item)
        return
    if isinstance(raw, dict):
        for key in ENVELOPE_KEYS:
            if isinstance(raw.get(key), list):
                yield from iter_records(raw[key])
                return
    yield raw


def quality_score(
    data_type: HealthDataType,
    value: Any,
    unit: str | None,
    precise: bool = True,
) -> float:
    """
    Heuristic 0..1 confidence in a normalized reading.

    Penalizes a missing unit, day-precision timestamps and numeric values
    outside the plausible physiological range for the data type.
    """
    score = 1.0
    if unit is None and not isinstance(value, dict):
        score -= 0.2
    if not precise:
        score -= 0.1
    if isinstance(value, (int, float)):
        bounds = PLAUSIBLE_RANGES.get(data_type)
        if bounds and not bounds[0] <= value <= bounds[1]:
            score -= 0.5
    if isinstance(value, dict):
        populated = sum(1 for v in value.values() if v is not None)
        score = min(1.0, 0.4 + 0.05 * populated)
    return round(max(0.0, min(1.0, score)), 2)


class HealthDataNormalizer:
    """Normalizes vendor-specific data into canonical health data rows."""

    extractors = READING_EXTRACTORS

    def normalize(
        self,
        raw: Any,
        provider: Provider | str,
        data_type: HealthDataType | str,
        user_id: str,
        device_id: str,
        synced_at: datetime | None = None,
    ) -> list[WearableHealthData]:
        """
        Normalize an arbitrary vendor payload into canonical rows.

        Args:
            raw: Raw vendor payload (record, list or envelope)
            provider: Source provider
            data_type: Requested data type
            user_id: Owning user
            device_id: Source device
            synced_at: Sync timestamp stamped on every row

        Returns:
            Zero or more WearableHealthData rows
        """
        data_type = HealthDataType(data_type)
        synced_at = synced_at or datetime.now(timezone.utc)
        rows: list[WearableHealthData] = []

        for record in iter_records(raw):
            payload = parse_payload(record, provider, data_type)
            if isinstance(payload, UnknownPayload):
                logger.debug(
                    "Unrecognized %s payload for %s on device %s",
                    data_type.value, provider, device_id,
                )
            extractor = self.extractors[type(payload)]
            try:
                readings = extractor(payload, data_type)
            except (ValueError, TypeError, OverflowError) as e:
                logger.warning(
                    "Skipping malformed %s record from %s: %s", data_type.value, provider, e,
                )
                continue
            for reading in readings:
                row = self._build_row(reading, record, data_type, user_id, device_id, synced_at)
                if row is not None:
                    rows.append(row)

        return rows

    def normalize_workout(
        self,
        raw: Any,
        user_id: str | None = None,
        device_id: str | None = None,
        provider: Provider | str | None = None,
    ) -> NormalizedWorkout | None:
        """See :func:`normalize_workout`."""
        return normalize_workout(raw, user_id=user_id, device_id=device_id, provider=provider)

    def aggregate(self, samples: Iterable[WearableHealthData]) -> list[DailyValue]:
        """See :func:`fitlink_normalize.aggregation.aggregate_daily`."""
        return aggregate_daily(samples)

    def _build_row(
        self,
        reading: Reading,
        record: Any,
        data_type: HealthDataType,
        user_id: str,
        device_id: str,
        synced_at: datetime,
    ) -> WearableHealthData | None:
        value = reading.value
        numeric = _as_float(value) if not isinstance(value, dict) else None
        text = None
        if numeric is None and isinstance(value, str) and value.strip():
            text = value.strip()
        structured = value if isinstance(value, dict) else None
        if numeric is None and text is None and structured is None:
            return None

        try:
            timestamp = to_utc(reading.timestamp)
        except (ValueError, TypeError, OverflowError):
            logger.debug("Dropping %s reading with bad timestamp %r", data_type.value, reading.timestamp)
            return None

        quality_value = numeric if numeric is not None else (structured if structured is not None else text)
        row_id = uuid5(
            NAMESPACE_URL,
            f"fitlink:sample:{device_id}:{data_type.value}:{timestamp.isoformat()}",
        )
        return WearableHealthData(
            id=str(row_id),
            user_id=user_id,
            device_id=device_id,
            data_type=data_type,
            timestamp=timestamp,
            value_numeric=numeric,
            value_text=text,
            value_json=structured,
            unit=reading.unit,
            quality_score=quality_score(data_type, quality_value, reading.unit, reading.precise),
            source_workout_id=reading.source_workout_id,
            raw_data=record if isinstance(record, dict) else {"value": record},
            synced_at=synced_at,
        )
