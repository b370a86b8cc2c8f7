"""Trend extrapolation used when no trained model can serve a forecast."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from .data_processing import is_rush_hour
from .records import MeasurementRecord


DEFAULT_VALUES = {"pm25": 35.0, "pm10": 55.0, "aqi": 85.0, "no2": 25.0, "o3": 60.0}
DEFAULT_VALUE = 50.0

VALUE_BOUNDS = {
	"pm25": (0.0, 300.0),
	"pm10": (0.0, 500.0),
	"aqi": (1.0, 500.0),
	"no2": (0.0, 200.0),
	"o3": (0.0, 300.0),
}
DEFAULT_BOUNDS = (0.0, 1000.0)

# Monthly multipliers, January first. Particulates peak in winter, ozone in summer.
SEASONAL_PATTERNS = {
	"pm25": (1.2, 1.1, 1.0, 0.9, 0.8, 0.7, 0.8, 0.9, 1.0, 1.1, 1.3, 1.4),
	"pm10": (1.3, 1.2, 1.1, 0.9, 0.8, 0.7, 0.8, 0.9, 1.0, 1.1, 1.2, 1.3),
	"aqi": (1.2, 1.1, 1.0, 0.9, 0.8, 0.7, 0.8, 0.9, 1.0, 1.1, 1.2, 1.3),
	"no2": (1.1, 1.0, 0.9, 0.9, 0.8, 0.8, 0.9, 1.0, 1.0, 1.1, 1.1, 1.2),
	"o3": (0.9, 1.0, 1.1, 1.2, 1.3, 1.2, 1.1, 1.0, 0.9, 0.9, 0.9, 0.9),
}

TREND_WEIGHTS = ((12, 0.5), (24, 0.3), (None, 0.2))
MIN_TREND_VALUES = 3


def calculate_trend(values: Sequence[float]) -> float:
	"""Least-squares slope per step of ``values`` given newest-first.

	The fit runs oldest to newest, so readings that rise over time give a
	positive slope.
	"""

	if len(values) < 2:
		return 0.0
	chronological = np.asarray(values, dtype=float)[::-1]
	slope, _intercept = np.polyfit(np.arange(len(chronological)), chronological, 1)
	return float(slope)


def seasonal_factor(pollutant: str, month: int) -> float:
	pattern = SEASONAL_PATTERNS.get(pollutant)
	if pattern is None:
		return 1.0
	return pattern[month - 1]


def daily_factor(hour: int) -> float:
	factor = 1.3 if is_rush_hour(hour) else 1.0
	if hour >= 22 or hour <= 5:
		factor *= 0.8
	return factor


def recent_values(records: Sequence[MeasurementRecord], pollutant: str, limit: int = 48) -> list[float]:
	"""Non-missing values of ``pollutant`` among the newest ``limit`` records."""

	values = (getattr(record, pollutant, None) for record in records[:limit])
	return [float(value) for value in values if value is not None and not np.isnan(value)]


def trend_based_prediction(
	values: Sequence[float],
	pollutant: str,
	hours: int,
	now: Optional[datetime] = None,
) -> float:
	"""Extrapolate ``values`` (newest first) ``hours`` ahead.

	The slope is a weighted blend of the last 12, last 24 and all values,
	scaled by the month's seasonal multiplier and a rush-hour/night
	multiplier for the target hour, then clamped to a plausible range.
	"""

	if len(values) < MIN_TREND_VALUES:
		return DEFAULT_VALUES.get(pollutant, DEFAULT_VALUE)

	now = now or datetime.now()
	combined = sum(
		weight * calculate_trend(values[:window] if window else values)
		for window, weight in TREND_WEIGHTS
	)

	target_hour = (now.hour + hours) % 24
	predicted = values[0] + combined * hours * seasonal_factor(pollutant, now.month) * daily_factor(target_hour)

	low, high = VALUE_BOUNDS.get(pollutant, DEFAULT_BOUNDS)
	return float(min(high, max(low, predicted)))
