"""Record types exchanged between the reading store and the forecasting pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional


POLLUTANTS = ("pm25", "pm10", "aqi", "no2", "o3")

MEASUREMENT_FIELDS = (
	"pm25",
	"pm10",
	"no2",
	"so2",
	"co",
	"o3",
	"aqi",
	"temperature",
	"humidity",
	"pressure",
	"wind_speed",
	"wind_direction",
)

METHOD_MODEL = "ml-model"
METHOD_TREND = "trend-based"
METHOD_FALLBACK = "fallback"


@dataclass(frozen=True)
class MeasurementRecord:
	"""A single reading for one location, as stored by the collector."""

	timestamp: datetime
	location_id: str
	pm25: Optional[float] = None
	pm10: Optional[float] = None
	no2: Optional[float] = None
	so2: Optional[float] = None
	co: Optional[float] = None
	o3: Optional[float] = None
	aqi: Optional[float] = None
	temperature: Optional[float] = None
	humidity: Optional[float] = None
	pressure: Optional[float] = None
	wind_speed: Optional[float] = None
	wind_direction: Optional[float] = None


@dataclass(frozen=True)
class ForecastRecord:
	"""Predicted value of one pollutant at one future hour."""

	location_id: str
	timestamp: datetime
	horizon: int
	pollutant: str
	value: float
	confidence: float
	method: str
	features: tuple[float, ...] = field(default_factory=tuple)
	uncertainty_lower: Optional[float] = None
	uncertainty_upper: Optional[float] = None
	model_r2: Optional[float] = None

	def to_dict(self) -> dict:
		"""Plain dictionary suitable for JSON responses or database inserts."""

		payload = asdict(self)
		payload["timestamp"] = self.timestamp.isoformat()
		payload["features"] = list(self.features)
		return payload
