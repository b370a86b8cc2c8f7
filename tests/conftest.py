import math
from datetime import datetime, timedelta

import numpy as np
import pytest

from aqi_forecaster.records import MeasurementRecord


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_history(count=80, location_id="bengaluru", start=datetime(2024, 3, 10, 12), blank=None):
    """Hourly records, newest first, with smooth periodic readings.

    ``blank`` maps a field name to the record indexes where it is missing.
    """
    blank = blank or {}
    records = []
    for i in range(count):
        timestamp = start - timedelta(hours=i)
        phase = i / 6
        values = {
            "pm25": 40 + 10 * math.sin(phase),
            "pm10": 70 + 15 * math.cos(phase),
            "aqi": 90 + 20 * math.sin(phase / 2),
            "no2": 25 + 5 * math.cos(phase / 3),
            "o3": 55 + 10 * math.sin(phase / 4),
            "so2": 5.0,
            "co": 0.8,
            "temperature": 24 + 4 * math.sin(2 * math.pi * timestamp.hour / 24),
            "humidity": 60 + 10 * math.cos(phase),
            "pressure": 1012 + math.sin(phase),
            "wind_speed": 3 + math.cos(phase),
            "wind_direction": 180.0,
        }
        for field, indexes in blank.items():
            if i in indexes:
                values[field] = None
        records.append(MeasurementRecord(timestamp=timestamp, location_id=location_id, **values))
    return records


@pytest.fixture
def history():
    return make_history()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 10, 12, 30))


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def history_factory():
    return make_history
