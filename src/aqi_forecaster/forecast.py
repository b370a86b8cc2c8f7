"""Forecast utilities for hourly pollutant prediction."""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

import numpy as np
import pandas as pd

from .config import ForecastConfig
from .data_processing import (
    DEFAULT_HUMIDITY,
    DEFAULT_PRESSURE,
    DEFAULT_TEMPERATURE,
    DEFAULT_WIND_DIRECTION,
    DEFAULT_WIND_SPEED,
    build_prediction_row,
    records_to_frame,
    value_or,
)
from .records import (
    METHOD_FALLBACK,
    METHOD_MODEL,
    METHOD_TREND,
    POLLUTANTS,
    ForecastRecord,
    MeasurementRecord,
)
from .training import ModelSnapshot, ModelTrainer
from .trend import recent_values, trend_based_prediction


logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
MATCH_TOLERANCE = timedelta(minutes=30)


def horizon_penalty(horizon: int) -> float:
    return max(0.1, 1 - 0.03 * horizon)


def model_confidence(r2: Optional[float], horizon: int) -> float:
    """Confidence of a model-based value; an unscored model counts as R² 0.5."""
    base = min(0.95, r2 or 0.5)
    return min(1.0, max(0.0, base * horizon_penalty(horizon)))


def trend_confidence(horizon: int) -> float:
    return max(0.2, 0.6 - 0.02 * horizon)


def prediction_uncertainty(mse: Optional[float], horizon: int) -> float:
    """Half-width of the uncertainty band, widening 10% per hour."""
    return math.sqrt(mse or 100) * (1 + 0.1 * horizon)


def generate_weather_forecast(
    current: MeasurementRecord,
    hours: int,
    rng: np.random.Generator,
) -> list[dict[str, float]]:
    """Perturb the latest observed weather into an hourly trajectory.

    This is a placeholder for a weather feed: a daily temperature cycle
    plus bounded noise, not a physical model.
    """
    temperature = value_or(current.temperature, DEFAULT_TEMPERATURE)
    humidity = value_or(current.humidity, DEFAULT_HUMIDITY)
    pressure = value_or(current.pressure, DEFAULT_PRESSURE)
    wind_speed = value_or(current.wind_speed, DEFAULT_WIND_SPEED)
    wind_direction = value_or(current.wind_direction, DEFAULT_WIND_DIRECTION)

    forecast = []
    for h in range(hours):
        daily_cycle = 5 * math.sin(2 * math.pi * h / 24)
        forecast.append({
            "temperature": temperature + daily_cycle + float(rng.uniform(-1, 1)),
            "humidity": min(90.0, max(20.0, humidity + float(rng.uniform(-5, 5)))),
            "pressure": pressure + float(rng.uniform(-2.5, 2.5)),
            "wind_speed": max(0.0, wind_speed + float(rng.uniform(-1, 1))),
            "wind_direction": wind_direction + float(rng.uniform(-15, 15)),
        })
    return forecast


class ForecastGenerator:
    """Produces hourly forecasts for every tracked pollutant of one location.

    Models come from ``trainer``, which is retrained synchronously when it
    has never been trained or its training interval has elapsed. Pollutants
    without a usable model are extrapolated from their recent trend.
    """

    def __init__(
        self,
        trainer: ModelTrainer,
        config: Optional[ForecastConfig] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.trainer = trainer
        self.config = config or ForecastConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self._clock = clock

    def generate(
        self,
        history: Sequence[MeasurementRecord],
        hours: Optional[int] = None,
    ) -> list[ForecastRecord]:
        """Forecast ``hours`` ahead from ``history`` (newest record first).

        Args:
            history: Measurements for a single location, newest first
            hours: Forecast horizon; defaults to the configured horizon

        Returns:
            One record per (hour, pollutant), hour ascending, pollutants in
            ``POLLUTANTS`` order
        """
        if not history:
            raise ValueError("At least one historical measurement is required to forecast")

        hours = self.config.default_horizon_hours if hours is None else int(hours)
        if hours < 1:
            raise ValueError(f"Forecast horizon must be at least 1 hour; received {hours}.")

        now = self._clock()
        self.trainer.train_if_due(history, now)
        snapshot = self.trainer.snapshot()

        latest = history[0]
        weather_forecast = generate_weather_forecast(latest, hours, self.rng)
        recent = {
            pollutant: recent_values(history, pollutant, self.config.trend_history)
            for pollutant in POLLUTANTS
        }

        forecasts = []
        for horizon in range(1, hours + 1):
            timestamp = now + timedelta(hours=horizon)
            features = build_prediction_row(timestamp, latest, weather_forecast[horizon - 1])

            for pollutant in POLLUTANTS:
                forecasts.append(
                    self._forecast_pollutant(
                        snapshot, pollutant, features, recent[pollutant],
                        location_id=latest.location_id,
                        timestamp=timestamp,
                        horizon=horizon,
                        now=now,
                    )
                )

        return forecasts

    def _forecast_pollutant(
        self,
        snapshot: ModelSnapshot,
        pollutant: str,
        features: np.ndarray,
        recent: Sequence[float],
        location_id: str,
        timestamp: datetime,
        horizon: int,
        now: datetime,
    ) -> ForecastRecord:
        common = {
            "location_id": location_id,
            "timestamp": timestamp,
            "horizon": horizon,
            "pollutant": pollutant,
            "features": tuple(float(v) for v in features),
        }

        model = snapshot.model_for(pollutant)
        if model is None:
            value = trend_based_prediction(recent, pollutant, horizon, now)
            return ForecastRecord(
                value=round(value, 1),
                confidence=round(trend_confidence(horizon), 2),
                method=METHOD_TREND,
                **common,
            )

        try:
            predicted = float(model.predict(features.reshape(1, -1))[0])
            if not math.isfinite(predicted):
                raise ValueError(f"non-finite prediction {predicted}")
        except Exception as exc:
            logger.error("Error predicting %s: %s", pollutant, exc)
            value = trend_based_prediction(recent, pollutant, horizon, now)
            return ForecastRecord(
                value=round(value, 1),
                confidence=FALLBACK_CONFIDENCE,
                method=METHOD_FALLBACK,
                **common,
            )

        value = max(0.0, predicted)
        metrics = snapshot.metrics_for(pollutant)
        uncertainty = prediction_uncertainty(metrics.mse, horizon)

        return ForecastRecord(
            value=round(value, 1),
            confidence=round(model_confidence(metrics.r2, horizon), 2),
            method=METHOD_MODEL,
            uncertainty_lower=round(value - uncertainty, 1),
            uncertainty_upper=round(value + uncertainty, 1),
            model_r2=metrics.r2,
            **common,
        )


def summarize_confidence(forecasts: Sequence[ForecastRecord]) -> pd.DataFrame:
    """Aggregate confidence per pollutant, highest average first."""
    columns = ["pollutant", "avg_confidence", "min_confidence", "max_confidence", "prediction_count"]
    if not forecasts:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(
        [{"pollutant": f.pollutant, "confidence": f.confidence} for f in forecasts]
    )
    summary = df.groupby("pollutant")["confidence"].agg(["mean", "min", "max", "count"]).reset_index()
    summary.columns = columns
    return summary.sort_values("avg_confidence", ascending=False).reset_index(drop=True)


def confidence_by_hour(forecasts: Sequence[ForecastRecord]) -> pd.DataFrame:
    """Average confidence per target hour of day and pollutant."""
    columns = ["hour", "pollutant", "avg_confidence"]
    if not forecasts:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(
        [{"hour": f.timestamp.hour, "pollutant": f.pollutant, "confidence": f.confidence} for f in forecasts]
    )
    trends = df.groupby(["hour", "pollutant"])["confidence"].mean().reset_index()
    trends.columns = columns
    return trends


def match_forecasts(
    forecasts: Sequence[ForecastRecord],
    measurements: Sequence[MeasurementRecord],
    tolerance: timedelta = MATCH_TOLERANCE,
) -> pd.DataFrame:
    """Pair each forecast with the reading nearest its target time.

    A forecast's ``timestamp`` is the hour it predicts. Readings of the same
    location within ``tolerance`` of it are candidates; forecasts whose
    nearest reading lacks their pollutant are dropped.
    """
    columns = ["location_id", "timestamp", "horizon", "pollutant", "value", "confidence", "actual"]
    if not forecasts or not measurements:
        return pd.DataFrame(columns=columns)

    predicted = pd.DataFrame([
        {
            "location_id": f.location_id,
            "timestamp": f.timestamp,
            "horizon": f.horizon,
            "pollutant": f.pollutant,
            "value": f.value,
            "confidence": f.confidence,
        }
        for f in forecasts
    ])
    predicted["timestamp"] = pd.to_datetime(predicted["timestamp"]).astype("datetime64[ns]")
    predicted = predicted.sort_values("timestamp", kind="stable")

    observed = records_to_frame(measurements)[["timestamp", "location_id", *POLLUTANTS]]
    observed = observed.rename(columns={"timestamp": "measured_at"})
    observed["measured_at"] = pd.to_datetime(observed["measured_at"]).astype("datetime64[ns]")
    observed = observed.sort_values("measured_at", kind="stable")

    matched = pd.merge_asof(
        predicted,
        observed,
        left_on="timestamp",
        right_on="measured_at",
        by="location_id",
        direction="nearest",
        tolerance=pd.Timedelta(tolerance),
    )

    readings = matched[list(POLLUTANTS)].to_numpy(dtype=float)
    pollutant_idx = [POLLUTANTS.index(pollutant) for pollutant in matched["pollutant"]]
    matched["actual"] = readings[np.arange(len(matched)), pollutant_idx]
    return matched.dropna(subset=["actual"])[columns].reset_index(drop=True)


def score_forecasts(
    forecasts: Sequence[ForecastRecord],
    measurements: Sequence[MeasurementRecord],
    tolerance: float = 0.2,
) -> dict[str, pd.DataFrame]:
    """Compare issued forecasts with the readings that later arrived.

    Returns two frames:
        ``by_pollutant``: prediction count, mean absolute error, percentage of
        forecasts within ``tolerance`` of ``max(actual, 1)`` and
        mean/min/max confidence
        ``by_horizon``: mean absolute error and sample count per pollutant and
        horizon
    """
    pollutant_columns = [
        "pollutant",
        "total_predictions",
        "avg_absolute_error",
        "accuracy_percentage",
        "avg_confidence",
        "min_confidence",
        "max_confidence",
    ]
    horizon_columns = ["pollutant", "horizon", "avg_error", "sample_count"]

    matched = match_forecasts(forecasts, measurements)
    if matched.empty:
        return {
            "by_pollutant": pd.DataFrame(columns=pollutant_columns),
            "by_horizon": pd.DataFrame(columns=horizon_columns),
        }

    matched["abs_error"] = (matched["value"] - matched["actual"]).abs()
    matched["within_tolerance"] = matched["abs_error"] / np.maximum(matched["actual"], 1.0) <= tolerance

    by_pollutant = matched.groupby("pollutant").agg(
        total_predictions=("abs_error", "size"),
        avg_absolute_error=("abs_error", "mean"),
        accuracy_percentage=("within_tolerance", "mean"),
        avg_confidence=("confidence", "mean"),
        min_confidence=("confidence", "min"),
        max_confidence=("confidence", "max"),
    ).reset_index()
    by_pollutant["accuracy_percentage"] *= 100

    by_horizon = matched.groupby(["pollutant", "horizon"]).agg(
        avg_error=("abs_error", "mean"),
        sample_count=("abs_error", "size"),
    ).reset_index()

    logger.info("Scored %d of %d forecasts against measurements", len(matched), len(forecasts))
    return {
        "by_pollutant": by_pollutant[pollutant_columns],
        "by_horizon": by_horizon[horizon_columns],
    }
