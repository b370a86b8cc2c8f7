from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from threading import Barrier
from unittest.mock import patch

import numpy as np
import pytest

from aqi_forecaster.config import ForecastConfig, ModelConfig
from aqi_forecaster.forecast import (
    ForecastGenerator,
    confidence_by_hour,
    generate_weather_forecast,
    match_forecasts,
    model_confidence,
    prediction_uncertainty,
    score_forecasts,
    summarize_confidence,
    trend_confidence,
)
from aqi_forecaster.records import (
    METHOD_FALLBACK,
    METHOD_MODEL,
    METHOD_TREND,
    POLLUTANTS,
    ForecastRecord,
    MeasurementRecord,
)
from aqi_forecaster.training import ModelTrainer


@pytest.fixture
def trainer(clock):
    return ModelTrainer(ModelConfig(), clock=clock)


@pytest.fixture
def generator(trainer, rng, clock):
    return ForecastGenerator(trainer, ForecastConfig(), rng=rng, clock=clock)


class TestConfidence:
    def test_model_confidence_decays_with_horizon(self):
        values = [model_confidence(0.8, h) for h in range(1, 25)]
        assert all(a > b for a, b in zip(values, values[1:]))
        assert values[0] == pytest.approx(0.8 * 0.97)

    def test_model_confidence_caps_r2(self):
        assert model_confidence(0.99, 1) == pytest.approx(0.95 * 0.97)

    def test_unscored_model_counts_as_half(self):
        assert model_confidence(0.0, 10) == pytest.approx(0.5 * 0.7)

    def test_negative_r2_stays_in_range(self):
        assert model_confidence(-2.0, 1) == 0.0

    def test_trend_confidence(self):
        values = [trend_confidence(h) for h in range(1, 20)]
        assert all(a > b for a, b in zip(values, values[1:]))
        assert trend_confidence(40) == 0.2

    def test_uncertainty_widens(self):
        assert prediction_uncertainty(0.0, 0) == pytest.approx(10.0)
        assert prediction_uncertainty(25.0, 10) == pytest.approx(10.0)


class TestWeatherForecast:
    def test_bounds(self, history, rng):
        forecast = generate_weather_forecast(history[0], 48, rng)

        assert len(forecast) == 48
        for step in forecast:
            assert 20 <= step["humidity"] <= 90
            assert step["wind_speed"] >= 0

    def test_daily_temperature_cycle(self, history, rng):
        base = history[0].temperature
        forecast = generate_weather_forecast(history[0], 24, rng)

        assert forecast[6]["temperature"] == pytest.approx(base + 5, abs=1)
        assert forecast[18]["temperature"] == pytest.approx(base - 5, abs=1)

    def test_seeded_source_is_repeatable(self, history):
        first = generate_weather_forecast(history[0], 12, np.random.default_rng(3))
        second = generate_weather_forecast(history[0], 12, np.random.default_rng(3))
        assert first == second


class TestForecastGenerator:
    def test_requires_history(self, generator):
        with pytest.raises(ValueError):
            generator.generate([])

    def test_rejects_empty_horizon(self, generator, history):
        with pytest.raises(ValueError):
            generator.generate(history, hours=0)

    def test_generation_order(self, generator, history, clock):
        forecasts = generator.generate(history, hours=3)

        assert len(forecasts) == 3 * len(POLLUTANTS)
        assert [f.horizon for f in forecasts] == [h for h in (1, 2, 3) for _ in POLLUTANTS]
        assert [f.pollutant for f in forecasts[:5]] == list(POLLUTANTS)
        assert forecasts[-1].timestamp == clock.now + timedelta(hours=3)
        assert {f.location_id for f in forecasts} == {"bengaluru"}

    def test_default_horizon(self, generator, history):
        assert len(generator.generate(history)) == 24 * len(POLLUTANTS)

    def test_trains_lazily(self, generator, trainer, history):
        forecasts = generator.generate(history, hours=2)

        assert trainer.trained_pollutants == list(POLLUTANTS)
        assert {f.method for f in forecasts} == {METHOD_MODEL}

    def test_model_forecasts(self, generator, history):
        for forecast in generator.generate(history, hours=12):
            assert forecast.value >= 0
            assert 0 <= forecast.confidence <= 1
            assert forecast.model_r2 is not None
            assert len(forecast.features) == 21
            upper = forecast.uncertainty_upper - forecast.value
            lower = forecast.value - forecast.uncertainty_lower
            assert upper == pytest.approx(lower, abs=0.11)
            assert forecast.uncertainty_upper >= forecast.value

    def test_values_are_rounded(self, generator, history):
        for forecast in generator.generate(history, hours=4):
            assert forecast.value == round(forecast.value, 1)
            assert forecast.confidence == round(forecast.confidence, 2)

    def test_negative_predictions_clamped(self, generator, trainer, history):
        trainer.train(history)
        with patch("sklearn.pipeline.Pipeline.predict", return_value=np.array([-12.0])):
            forecasts = generator.generate(history, hours=2)

        assert all(f.value == 0.0 for f in forecasts)
        assert all(f.method == METHOD_MODEL for f in forecasts)

    def test_short_history_uses_trend(self, generator, trainer, history):
        forecasts = generator.generate(history[:10], hours=6)

        assert trainer.trained_pollutants == []
        assert {f.method for f in forecasts} == {METHOD_TREND}
        for forecast in forecasts:
            assert forecast.confidence == round(trend_confidence(forecast.horizon), 2)
            assert forecast.uncertainty_lower is None
            assert forecast.value >= 0

    def test_prediction_error_falls_back(self, generator, trainer, history):
        trainer.train(history)
        with patch("sklearn.pipeline.Pipeline.predict", side_effect=ValueError("bad input")):
            forecasts = generator.generate(history, hours=3)

        assert {f.method for f in forecasts} == {METHOD_FALLBACK}
        assert {f.confidence for f in forecasts} == {0.3}

    def test_non_finite_prediction_falls_back(self, generator, trainer, history):
        trainer.train(history)
        with patch("sklearn.pipeline.Pipeline.predict", return_value=np.array([np.inf])):
            forecasts = generator.generate(history, hours=2)

        assert {f.method for f in forecasts} == {METHOD_FALLBACK}
        assert {f.confidence for f in forecasts} == {0.3}
        assert all(np.isfinite(f.value) for f in forecasts)

    def test_concurrent_requests_train_once(self, trainer, history, clock):
        barrier = Barrier(4)

        def forecast(seed):
            generator = ForecastGenerator(trainer, rng=np.random.default_rng(seed), clock=clock)
            barrier.wait()
            return generator.generate(history, hours=2)

        with patch.object(trainer, "_train", wraps=trainer._train) as fit:
            with ThreadPoolExecutor(max_workers=4) as pool:
                results = list(pool.map(forecast, range(4)))

        assert fit.call_count == 1
        for forecasts in results:
            assert {f.method for f in forecasts} == {METHOD_MODEL}

    def test_retrains_after_interval(self, generator, trainer, history, clock):
        generator.generate(history, hours=1)
        first_training = trainer.last_trained

        clock.advance(minutes=30)
        generator.generate(history, hours=1)
        assert trainer.last_trained == first_training

        clock.advance(minutes=31)
        generator.generate(history, hours=1)
        assert trainer.last_trained == clock.now

    def test_partial_models(self, generator, history_factory):
        records = history_factory(count=60, blank={"o3": set(range(30))})
        forecasts = generator.generate(records, hours=2)

        methods = {f.pollutant: f.method for f in forecasts}
        assert methods["o3"] == METHOD_TREND
        assert methods["pm25"] == METHOD_MODEL

    def test_to_dict(self, generator, history):
        payload = generator.generate(history, hours=1)[0].to_dict()

        assert payload["pollutant"] == "pm25"
        assert payload["method"] == METHOD_MODEL
        assert isinstance(payload["timestamp"], str)
        assert isinstance(payload["features"], list)


class TestSummarizeConfidence:
    def test_groups_by_pollutant(self, clock):
        def record(pollutant, confidence):
            return ForecastRecord(
                location_id="bengaluru", timestamp=clock.now, horizon=1,
                pollutant=pollutant, value=10.0, confidence=confidence, method=METHOD_TREND,
            )

        summary = summarize_confidence([record("pm25", 0.5), record("pm25", 0.3), record("o3", 0.9)])

        assert summary["pollutant"].tolist() == ["o3", "pm25"]
        pm25 = summary.iloc[1]
        assert pm25["avg_confidence"] == pytest.approx(0.4)
        assert pm25["min_confidence"] == 0.3
        assert pm25["max_confidence"] == 0.5
        assert pm25["prediction_count"] == 2

    def test_empty(self):
        assert summarize_confidence([]).empty

    def test_by_hour(self, clock):
        def record(pollutant, hours, confidence):
            return ForecastRecord(
                location_id="bengaluru", timestamp=clock.now + timedelta(hours=hours), horizon=hours,
                pollutant=pollutant, value=10.0, confidence=confidence, method=METHOD_MODEL,
            )

        trends = confidence_by_hour([
            record("pm25", 1, 0.9), record("pm25", 25, 0.5), record("o3", 1, 0.4), record("pm25", 2, 0.8),
        ])

        assert trends[["hour", "pollutant"]].values.tolist() == [[13, "o3"], [13, "pm25"], [14, "pm25"]]
        assert trends["avg_confidence"].tolist() == pytest.approx([0.4, 0.7, 0.8])


def _reading(timestamp, location_id="bengaluru", **values):
    return MeasurementRecord(timestamp=timestamp, location_id=location_id, **values)


class TestScoreForecasts:
    @pytest.fixture
    def issue(self, clock):
        def forecast(pollutant, horizon, value, confidence=0.8, issued_at=None):
            issued_at = issued_at or clock.now
            return ForecastRecord(
                location_id="bengaluru", timestamp=issued_at + timedelta(hours=horizon), horizon=horizon,
                pollutant=pollutant, value=value, confidence=confidence, method=METHOD_MODEL,
            )
        return forecast

    def test_matches_nearest_reading_within_half_hour(self, issue, clock):
        forecasts = [issue("pm25", 1, 40.0), issue("o3", 1, 50.0), issue("pm25", 2, 50.0), issue("pm25", 3, 60.0)]
        readings = [
            _reading(clock.now + timedelta(hours=1, minutes=10), pm25=44.0),
            _reading(clock.now + timedelta(hours=1, minutes=25), pm25=100.0),
            _reading(clock.now + timedelta(hours=3), location_id="mysuru", pm25=60.0),
        ]

        matched = match_forecasts(forecasts, readings)

        # o3 has no reading; hours 2 and 3 have no bengaluru reading within 30 minutes
        assert len(matched) == 1
        assert matched.loc[0, "pollutant"] == "pm25"
        assert matched.loc[0, "horizon"] == 1
        assert matched.loc[0, "actual"] == 44.0

    def test_accuracy_threshold(self, issue, clock):
        forecasts = [
            issue("pm25", 1, 12.0, confidence=0.9),
            issue("pm25", 2, 13.0, confidence=0.7),
            issue("aqi", 1, 0.1),
        ]
        readings = [
            _reading(clock.now + timedelta(hours=1), pm25=10.0, aqi=0.0),
            _reading(clock.now + timedelta(hours=2), pm25=10.0),
        ]

        scores = score_forecasts(forecasts, readings)["by_pollutant"].set_index("pollutant")

        pm25 = scores.loc["pm25"]
        assert pm25["total_predictions"] == 2
        assert pm25["avg_absolute_error"] == pytest.approx(2.5)
        assert pm25["accuracy_percentage"] == pytest.approx(50.0)
        assert pm25["avg_confidence"] == pytest.approx(0.8)
        assert pm25["min_confidence"] == 0.7
        assert pm25["max_confidence"] == 0.9
        # readings below 1 are compared against 1
        assert scores.loc["aqi", "accuracy_percentage"] == pytest.approx(100.0)

    def test_groups_by_horizon(self, issue, clock):
        forecasts = [
            issue("pm25", 1, 12.0),
            issue("pm25", 2, 14.0, issued_at=clock.now - timedelta(hours=1)),
            issue("pm25", 2, 11.0),
        ]
        readings = [
            _reading(clock.now + timedelta(hours=1), pm25=10.0),
            _reading(clock.now + timedelta(hours=2), pm25=10.0),
        ]

        by_horizon = score_forecasts(forecasts, readings)["by_horizon"].set_index(["pollutant", "horizon"])

        assert by_horizon.loc[("pm25", 1), "avg_error"] == pytest.approx(2.0)
        assert by_horizon.loc[("pm25", 1), "sample_count"] == 1
        assert by_horizon.loc[("pm25", 2), "avg_error"] == pytest.approx(2.5)
        assert by_horizon.loc[("pm25", 2), "sample_count"] == 2

    def test_nothing_to_match(self, issue, clock):
        scores = score_forecasts([issue("pm25", 1, 12.0)], [_reading(clock.now - timedelta(days=1), pm25=10.0)])

        assert scores["by_pollutant"].empty
        assert scores["by_horizon"].empty
        assert "accuracy_percentage" in scores["by_pollutant"].columns
