"""Per-pollutant regression models and their validation metrics."""

from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

import joblib
import numpy as np
from sklearn.linear_model import LinearRegression
from sklearn.metrics import mean_squared_error
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import FunctionTransformer

from .config import ModelConfig
from .data_processing import MODEL_INPUT_COLUMNS, build_feature_table, build_model_inputs
from .records import POLLUTANTS, MeasurementRecord


logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"
ALGORITHMS = ["Polynomial Regression", "Trend Analysis", "Seasonal Decomposition"]


@dataclass(frozen=True)
class ModelMetrics:
	"""Validation scores of one pollutant model."""

	mse: float = 0.0
	r2: float = 0.0
	accuracy: float = 0.0


@dataclass(frozen=True)
class ModelSnapshot:
	"""Point-in-time view of the fitted models, safe to read while retraining runs."""

	models: Mapping[str, Pipeline] = field(default_factory=dict)
	metrics: Mapping[str, ModelMetrics] = field(default_factory=dict)
	last_trained: Optional[datetime] = None

	def model_for(self, pollutant: str) -> Optional[Pipeline]:
		return self.models.get(pollutant)

	def metrics_for(self, pollutant: str) -> ModelMetrics:
		return self.metrics.get(pollutant, ModelMetrics())


def add_squares(X):
	"""Append the square of every column; no cross terms."""

	X = np.asarray(X, dtype=float)
	return np.hstack([X, np.square(X)])


def make_regressor() -> Pipeline:
	"""Second-degree polynomial regression with per-dimension quadratic terms."""

	return Pipeline([
		("quadratic", FunctionTransformer(add_squares)),
		("regressor", LinearRegression()),
	])


def calculate_metrics(actual, predicted, tolerance: float = 0.2) -> ModelMetrics:
	"""Score predictions against actual values.

	``accuracy`` is the percentage of predictions whose absolute error is
	within ``tolerance`` of ``max(actual, 1)``. R² is reported as 0 when the
	actual values have no variance.
	"""

	actual = np.asarray(actual, dtype=float)
	predicted = np.asarray(predicted, dtype=float)
	if actual.size == 0:
		return ModelMetrics()

	mse = float(mean_squared_error(actual, predicted))

	total_sum_squares = float(np.sum((actual - actual.mean()) ** 2))
	residual_sum_squares = float(np.sum((actual - predicted) ** 2))
	r2 = 1 - residual_sum_squares / total_sum_squares if total_sum_squares > 0 else 0.0

	relative_error = np.abs(actual - predicted) / np.maximum(actual, 1.0)
	accuracy = float(np.mean(relative_error <= tolerance) * 100)

	return ModelMetrics(mse=mse, r2=float(r2), accuracy=accuracy)


class ModelTrainer:
	"""Fits and holds one regressor per tracked pollutant.

	Training is serialised by an internal lock and replaces the fitted state
	as a whole, so readers working from :meth:`snapshot` never observe a
	half-trained model set.
	"""

	def __init__(self, config: Optional[ModelConfig] = None, clock: Callable[[], datetime] = datetime.now):
		self.config = config or ModelConfig()
		self._clock = clock
		self._lock = threading.Lock()
		self._models: dict[str, Pipeline] = {}
		self._metrics: dict[str, ModelMetrics] = {pollutant: ModelMetrics() for pollutant in POLLUTANTS}
		self._last_trained: Optional[datetime] = None

	@property
	def last_trained(self) -> Optional[datetime]:
		return self._last_trained

	@property
	def trained_pollutants(self) -> list[str]:
		models = self._models
		return [pollutant for pollutant in POLLUTANTS if pollutant in models]

	def snapshot(self) -> ModelSnapshot:
		with self._lock:
			return ModelSnapshot(
				models=dict(self._models),
				metrics=dict(self._metrics),
				last_trained=self._last_trained,
			)

	def needs_training(self, now: Optional[datetime] = None) -> bool:
		if self._last_trained is None:
			return True
		now = now or self._clock()
		return (now - self._last_trained).total_seconds() > self.config.training_interval_seconds

	def train(self, records: Sequence[MeasurementRecord]) -> bool:
		"""Fit a model for every pollutant with enough data.

		Returns ``False`` when the history is too short or the input cannot be
		processed at all. A failure for one pollutant is logged and leaves that
		pollutant's previous model in place.
		"""

		with self._lock:
			return self._train_guarded(records)

	def train_if_due(self, records: Sequence[MeasurementRecord], now: Optional[datetime] = None) -> bool:
		"""Train only if the models are still due once the lock is held.

		Concurrent callers that queue behind a running training reuse its
		result instead of refitting on the same data. Returns ``True`` only
		when this call trained successfully.
		"""

		with self._lock:
			if not self.needs_training(now):
				return False
			return self._train_guarded(records)

	def _train_guarded(self, records: Sequence[MeasurementRecord]) -> bool:
		try:
			return self._train(records)
		except Exception:
			logger.exception("Error in model training")
			return False

	def _train(self, records: Sequence[MeasurementRecord]) -> bool:
		min_points = self.config.min_data_points
		if len(records) < min_points:
			logger.warning("Insufficient data for training: %d < %d", len(records), min_points)
			return False

		logger.info("Training models with %d data points", len(records))
		feature_table = build_feature_table(records)
		inputs = build_model_inputs(feature_table)

		models = dict(self._models)
		metrics = dict(self._metrics)

		for pollutant in POLLUTANTS:
			targets = feature_table[pollutant].to_numpy(dtype=float)
			mask = ~np.isnan(targets)
			if mask.sum() < min_points:
				logger.warning("Insufficient %s data: %d", pollutant, int(mask.sum()))
				continue

			X, y = inputs[mask], targets[mask]
			split_idx = math.floor(len(X) * (1 - self.config.validation_fraction))

			try:
				model = make_regressor().fit(X[:split_idx], y[:split_idx])
				model_metrics = None
				if split_idx < len(X):
					model_metrics = calculate_metrics(
						y[split_idx:],
						model.predict(X[split_idx:]),
						tolerance=self.config.accuracy_tolerance,
					)
			except Exception as exc:
				logger.error("Error training %s model: %s", pollutant, exc)
				continue

			models[pollutant] = model
			# No validation rows: the last scores stand.
			if model_metrics is not None:
				metrics[pollutant] = model_metrics
			logger.info(
				"%s model trained - R2: %.3f, MSE: %.2f",
				pollutant.upper(),
				metrics[pollutant].r2,
				metrics[pollutant].mse,
			)

		self._models = models
		self._metrics = metrics
		self._last_trained = self._clock()
		logger.info("Model training completed (%d/%d pollutants)", len(models), len(POLLUTANTS))
		return True

	def evaluate(self, records: Sequence[MeasurementRecord]) -> Optional[dict[str, ModelMetrics]]:
		"""Score the current models on ``records`` without refitting them."""

		if not records:
			return None

		snapshot = self.snapshot()
		feature_table = build_feature_table(records)
		inputs = build_model_inputs(feature_table)

		evaluation: dict[str, ModelMetrics] = {}
		for pollutant, model in snapshot.models.items():
			targets = feature_table[pollutant].to_numpy(dtype=float)
			mask = ~np.isnan(targets)
			if not mask.any():
				continue
			try:
				predicted = model.predict(inputs[mask])
			except Exception as exc:
				logger.error("Error evaluating %s model: %s", pollutant, exc)
				evaluation[pollutant] = ModelMetrics(mse=float("inf"), r2=0.0, accuracy=0.0)
				continue
			evaluation[pollutant] = calculate_metrics(
				targets[mask], predicted, tolerance=self.config.accuracy_tolerance
			)
		return evaluation

	def model_info(self) -> dict:
		snapshot = self.snapshot()
		return {
			"models_trained": [p for p in POLLUTANTS if p in snapshot.models],
			"model_metrics": {p: asdict(snapshot.metrics_for(p)) for p in POLLUTANTS},
			"last_training": snapshot.last_trained.isoformat() if snapshot.last_trained else None,
			"training_interval": self.config.training_interval_seconds,
			"min_data_points": self.config.min_data_points,
			"features_count": len(MODEL_INPUT_COLUMNS),
			"algorithms": list(ALGORITHMS),
		}

	def save(self, models_dir: Path) -> Path:
		"""Persist fitted models with joblib next to a JSON metadata file."""

		models_dir = Path(models_dir)
		models_dir.mkdir(parents=True, exist_ok=True)
		snapshot = self.snapshot()

		for pollutant, model in snapshot.models.items():
			joblib.dump(model, models_dir / f"{pollutant}_model.joblib")

		metadata = {
			"feature_names": list(MODEL_INPUT_COLUMNS),
			"trained_pollutants": [p for p in POLLUTANTS if p in snapshot.models],
			"metrics": {p: asdict(m) for p, m in snapshot.metrics.items()},
			"last_trained": snapshot.last_trained.isoformat() if snapshot.last_trained else None,
		}
		metadata_path = models_dir / METADATA_FILENAME
		with open(metadata_path, "w", encoding="utf-8") as f:
			json.dump(metadata, f, indent=2)

		logger.info("Saved %d models to %s", len(snapshot.models), models_dir)
		return metadata_path

	def load(self, models_dir: Path) -> list[str]:
		"""Replace the fitted state with models saved by :meth:`save`."""

		models_dir = Path(models_dir)
		metadata_path = models_dir / METADATA_FILENAME
		if not metadata_path.exists():
			raise FileNotFoundError(
				f"Model metadata not found at {metadata_path}. "
				"Please run the training script to create it."
			)

		with open(metadata_path, "r", encoding="utf-8") as f:
			metadata = json.load(f)

		if metadata.get("feature_names") != list(MODEL_INPUT_COLUMNS):
			raise ValueError(f"Models in {models_dir} were trained on a different feature layout.")

		models = {}
		for pollutant in metadata.get("trained_pollutants", []):
			model_path = models_dir / f"{pollutant}_model.joblib"
			if not model_path.exists():
				raise FileNotFoundError(f"Model file not found at {model_path}")
			models[pollutant] = joblib.load(model_path)

		metrics = {pollutant: ModelMetrics() for pollutant in POLLUTANTS}
		for pollutant, values in metadata.get("metrics", {}).items():
			metrics[pollutant] = ModelMetrics(**values)

		last_trained = metadata.get("last_trained")
		with self._lock:
			self._models = models
			self._metrics = metrics
			self._last_trained = datetime.fromisoformat(last_trained) if last_trained else None

		logger.info("Loaded %d models from %s", len(models), models_dir)
		return list(models)
