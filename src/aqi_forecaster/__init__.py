"""AQI forecaster core package.

This package turns a location's measurement history into hourly pollutant
forecasts: it builds the feature table, trains one regression model per
pollutant, and falls back to trend extrapolation where no model is usable.
"""

from .config import ForecastConfig, ModelConfig, PipelineConfig, load_config
from .data_processing import build_feature_table, load_measurements, pm25_to_aqi
from .forecast import ForecastGenerator, confidence_by_hour, score_forecasts, summarize_confidence
from .pipeline import ForecastPipeline, run_training_pipeline
from .records import POLLUTANTS, ForecastRecord, MeasurementRecord
from .training import ModelMetrics, ModelTrainer
from .trend import trend_based_prediction

__all__ = [
	"ForecastConfig",
	"ModelConfig",
	"PipelineConfig",
	"load_config",
	"build_feature_table",
	"load_measurements",
	"pm25_to_aqi",
	"ForecastGenerator",
	"summarize_confidence",
	"confidence_by_hour",
	"score_forecasts",
	"ForecastPipeline",
	"run_training_pipeline",
	"POLLUTANTS",
	"ForecastRecord",
	"MeasurementRecord",
	"ModelMetrics",
	"ModelTrainer",
	"trend_based_prediction",
]
