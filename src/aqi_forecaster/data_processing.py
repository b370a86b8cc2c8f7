"""Feature engineering and data loading utilities for the AQI forecaster."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .records import MEASUREMENT_FIELDS, POLLUTANTS, MeasurementRecord


logger = logging.getLogger(__name__)

PM25_BREAKPOINTS = (
	(0.0, 12.0, 0, 50),
	(12.1, 35.4, 51, 100),
	(35.5, 55.4, 101, 150),
	(55.5, 150.4, 151, 200),
	(150.5, 250.4, 201, 300),
	(250.5, 350.4, 301, 400),
	(350.5, 500.4, 401, 500),
)

DEFAULT_TEMPERATURE = 25.0
DEFAULT_HUMIDITY = 60.0
DEFAULT_PRESSURE = 1013.0
DEFAULT_WIND_SPEED = 5.0
DEFAULT_WIND_DIRECTION = 0.0

MOVING_AVERAGE_WINDOW = 5

TIME_COLUMNS = [
	"hour",
	"day_of_week",
	"day_of_month",
	"month",
	"is_weekend",
	"is_rush_hour",
	"season_sin",
	"season_cos",
	"hour_sin",
	"hour_cos",
]

FEATURE_COLUMNS = TIME_COLUMNS + [
	"temperature",
	"humidity",
	"pressure",
	"wind_speed",
	"wind_direction",
	*(f"prev_{pollutant}" for pollutant in POLLUTANTS),
	"ma_pm25",
	"ma_pm10",
	"ma_temp",
	"temp_humidity",
	"wind_temp",
]

# Column order is shared by training and prediction; do not reorder.
MODEL_INPUT_COLUMNS = [
	"hour",
	"day_of_week",
	"month",
	"is_weekend",
	"is_rush_hour",
	"temperature",
	"humidity",
	"pressure",
	"wind_speed",
	"season_sin",
	"season_cos",
	"hour_sin",
	"hour_cos",
	"prev_pm25",
	"prev_pm10",
	"prev_aqi",
	"ma_pm25",
	"ma_pm10",
	"ma_temp",
	"temp_humidity",
	"wind_temp",
]

# Stand-ins for readings the prediction path cannot observe.
INPUT_DEFAULTS = {
	"pressure": DEFAULT_PRESSURE,
	"prev_pm25": 35.0,
	"prev_pm10": 50.0,
	"prev_aqi": 75.0,
}


def is_rush_hour(hour: int) -> bool:
	return 7 <= hour <= 9 or 17 <= hour <= 19


def value_or(value: Optional[float], default: float) -> float:
	if value is None or (isinstance(value, float) and math.isnan(value)):
		return default
	return float(value)


def time_features(timestamp: datetime) -> dict[str, float]:
	"""Calendar features of ``timestamp``.

	``day_of_week`` counts from Sunday (0) to Saturday (6); ``month`` runs from
	1 for January to 12 for December. Hour and month also get sine/cosine
	encodings so that 23:00 sits next to 00:00 and December next to
	January.
	"""

	hour = timestamp.hour
	day_of_week = (timestamp.weekday() + 1) % 7
	month = timestamp.month
	return {
		"hour": hour,
		"day_of_week": day_of_week,
		"day_of_month": timestamp.day,
		"month": month,
		"is_weekend": int(day_of_week in (0, 6)),
		"is_rush_hour": int(is_rush_hour(hour)),
		"season_sin": math.sin(2 * math.pi * month / 12),
		"season_cos": math.cos(2 * math.pi * month / 12),
		"hour_sin": math.sin(2 * math.pi * hour / 24),
		"hour_cos": math.cos(2 * math.pi * hour / 24),
	}


def records_to_frame(records: Sequence[MeasurementRecord]) -> pd.DataFrame:
	"""Tabulate records, keeping their order; missing readings become NaN."""

	columns = ["timestamp", "location_id", *MEASUREMENT_FIELDS]
	frame = pd.DataFrame(
		[[getattr(record, column) for column in columns] for record in records],
		columns=columns,
	)
	frame[list(MEASUREMENT_FIELDS)] = frame[list(MEASUREMENT_FIELDS)].astype(float)
	return frame


def build_feature_table(records: Sequence[MeasurementRecord]) -> pd.DataFrame:
	"""Create one feature row per record, in the order given.

	Lag columns hold the pollutant values of the record just before each row
	in the sequence; the first row has no predecessor and reuses its own
	values. Moving averages cover up to the last ``MOVING_AVERAGE_WINDOW``
	rows ending at the current one. The pollutant columns themselves are
	carried through untouched, including missing values, as training targets.
	"""

	output_columns = FEATURE_COLUMNS + list(POLLUTANTS)
	if len(records) == 0:
		return pd.DataFrame(columns=output_columns, dtype=float)

	frame = records_to_frame(records)
	table = pd.DataFrame([time_features(record.timestamp) for record in records])

	temperature = frame["temperature"].fillna(DEFAULT_TEMPERATURE)
	humidity = frame["humidity"].fillna(DEFAULT_HUMIDITY)
	wind_speed = frame["wind_speed"].fillna(DEFAULT_WIND_SPEED)

	table["temperature"] = temperature
	table["humidity"] = humidity
	table["pressure"] = frame["pressure"]
	table["wind_speed"] = wind_speed
	table["wind_direction"] = frame["wind_direction"].fillna(DEFAULT_WIND_DIRECTION)

	for pollutant in POLLUTANTS:
		lagged = frame[pollutant].shift(1)
		lagged.iloc[0] = frame[pollutant].iloc[0]
		table[f"prev_{pollutant}"] = lagged

	rolling = {"min_periods": 1, "window": MOVING_AVERAGE_WINDOW}
	table["ma_pm25"] = frame["pm25"].fillna(0.0).rolling(**rolling).mean()
	table["ma_pm10"] = frame["pm10"].fillna(0.0).rolling(**rolling).mean()
	table["ma_temp"] = temperature.rolling(**rolling).mean()

	table["temp_humidity"] = temperature * humidity / 100
	table["wind_temp"] = wind_speed * temperature

	for pollutant in POLLUTANTS:
		table[pollutant] = frame[pollutant]

	return table[output_columns]


def build_model_inputs(feature_table: pd.DataFrame) -> np.ndarray:
	"""Select the regression inputs from a feature table as a float matrix."""

	inputs = feature_table[MODEL_INPUT_COLUMNS].astype(float)
	inputs = inputs.fillna(value=INPUT_DEFAULTS)
	return inputs.to_numpy()


def build_prediction_row(
	timestamp: datetime,
	latest: MeasurementRecord,
	weather: Mapping[str, float],
) -> np.ndarray:
	"""Construct the regression inputs for one future hour.

	History-derived columns come from ``latest`` alone and are not rolled
	forward between forecast steps.
	"""

	temperature = weather["temperature"]
	humidity = weather["humidity"]
	wind_speed = weather["wind_speed"]
	latest_pm25 = value_or(latest.pm25, INPUT_DEFAULTS["prev_pm25"])
	latest_pm10 = value_or(latest.pm10, INPUT_DEFAULTS["prev_pm10"])

	row = dict(time_features(timestamp))
	row.update(
		{
			"temperature": temperature,
			"humidity": humidity,
			"pressure": weather["pressure"],
			"wind_speed": wind_speed,
			"prev_pm25": latest_pm25,
			"prev_pm10": latest_pm10,
			"prev_aqi": value_or(latest.aqi, INPUT_DEFAULTS["prev_aqi"]),
			"ma_pm25": latest_pm25,
			"ma_pm10": latest_pm10,
			"ma_temp": temperature,
			"temp_humidity": temperature * humidity / 100,
			"wind_temp": wind_speed * temperature,
		}
	)
	return np.array([float(row[column]) for column in MODEL_INPUT_COLUMNS])


def pm25_to_aqi(pm25_value: Optional[float]) -> float:
	"""Convert PM2.5 concentration to AQI using US EPA breakpoints."""

	if pm25_value is None or np.isnan(pm25_value):
		return np.nan

	pm25_value = max(0.0, float(pm25_value))
	for c_low, c_high, i_low, i_high in PM25_BREAKPOINTS:
		if pm25_value <= c_high:
			slope = (i_high - i_low) / (c_high - c_low)
			return float(round(slope * (max(pm25_value, c_low) - c_low) + i_low))
	return float(PM25_BREAKPOINTS[-1][3])


def load_measurements(csv_path: Path, location_id: Optional[str] = None) -> list[MeasurementRecord]:
	"""Load an exported reading table into records ordered newest-first.

	The CSV needs a ``timestamp`` column; a ``location_id`` (or ``location``)
	column is optional, and ``location_id`` filters on it when given.
	Readings missing from the file are left empty.
	"""

	csv_path = Path(csv_path)
	if not csv_path.exists():
		raise FileNotFoundError(f"Measurements file not found at {csv_path}")

	df = pd.read_csv(csv_path)
	if "timestamp" not in df.columns:
		raise ValueError(f"File '{csv_path}' must contain a 'timestamp' column.")
	if "location_id" not in df.columns and "location" in df.columns:
		df = df.rename(columns={"location": "location_id"})
	if "location_id" not in df.columns:
		df["location_id"] = location_id or "default"

	df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce")
	df = df.dropna(subset=["timestamp"])
	df["location_id"] = df["location_id"].astype(str)
	if location_id is not None:
		df = df[df["location_id"] == str(location_id)]
	df = df.sort_values("timestamp", ascending=False).reset_index(drop=True)

	available = [column for column in MEASUREMENT_FIELDS if column in df.columns]
	records = []
	for row in df.itertuples(index=False):
		values = {}
		for column in available:
			value = getattr(row, column)
			values[column] = None if pd.isna(value) else float(value)
		records.append(
			MeasurementRecord(
				timestamp=row.timestamp.to_pydatetime(),
				location_id=row.location_id,
				**values,
			)
		)

	logger.info("Loaded %d measurements from %s", len(records), csv_path.name)
	return records
