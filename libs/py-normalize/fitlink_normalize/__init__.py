"""
FitLink Normalize Library

Converts vendor-specific wearable payloads into the canonical FitLink
health data schema.
"""

from .aggregation import aggregate_daily
from .normalizer import HealthDataNormalizer, normalize_workout
from .schema import (
    DailyValue,
    HealthDataType,
    HeartRateZones,
    NormalizedWorkout,
    Provider,
    WearableHealthData,
)
from .vendor_schemas import UnknownPayload, VendorPayload, parse_payload

__version__ = "0.1.0"

__all__ = [
    "HealthDataNormalizer",
    "normalize_workout",
    "aggregate_daily",
    "DailyValue",
    "HealthDataType",
    "HeartRateZones",
    "NormalizedWorkout",
    "Provider",
    "WearableHealthData",
    "VendorPayload",
    "UnknownPayload",
    "parse_payload",
]
