"""Daily aggregation of canonical health samples."""

from collections import defaultdict
from datetime import date, timezone
from typing import Iterable

import numpy as np

from .schema import DailyValue, WearableHealthData


def aggregate_daily(samples: Iterable[WearableHealthData]) -> list[DailyValue]:
    """
    Average numeric samples per UTC calendar day.

    Days without samples are omitted rather than zero-filled, and samples
    carrying a text or structured value are ignored.

    Args:
        samples: Canonical samples of a single user and data type

    Returns:
        One DailyValue per day, sorted by date
    """
    buckets: dict[date, list[float]] = defaultdict(list)
    for sample in samples:
        if sample.value_numeric is None:
            continue
        day = sample.timestamp.astimezone(timezone.utc).date()
        buckets[day].append(sample.value_numeric)

    return [
        DailyValue(date=day, value=float(np.mean(values)))
        for day, values in sorted(buckets.items())
    ]
