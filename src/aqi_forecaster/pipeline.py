"""Per-location model registry and the entry points used by callers."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

import numpy as np

from .config import PipelineConfig, load_config
from .data_processing import load_measurements
from .forecast import ForecastGenerator
from .records import ForecastRecord, MeasurementRecord
from .training import ModelMetrics, ModelTrainer


logger = logging.getLogger(__name__)


def _check_location(location_id: str, records: Sequence[MeasurementRecord]) -> None:
	foreign = {record.location_id for record in records if record.location_id != location_id}
	if foreign:
		raise ValueError(
			f"Records for location '{location_id}' include other locations: {sorted(foreign)}"
		)


def location_dir(models_dir: Path, location_id: str) -> Path:
	"""Directory holding one location's models, kept inside ``models_dir``."""

	if not location_id or location_id in (".", "..") or "/" in location_id or "\\" in location_id:
		raise ValueError(f"Location id {location_id!r} cannot be used as a model directory name")
	return Path(models_dir) / location_id


class ForecastPipeline:
	"""Keeps one :class:`ModelTrainer` per location.

	Models are never shared between locations, so a retrain triggered by one
	location's request cannot change another location's forecasts.
	"""

	def __init__(
		self,
		config: Optional[PipelineConfig] = None,
		rng: Optional[np.random.Generator] = None,
		clock: Callable[[], datetime] = datetime.now,
	):
		self.config = config or PipelineConfig()
		self.rng = rng if rng is not None else np.random.default_rng()
		self._clock = clock
		self._trainers: dict[str, ModelTrainer] = {}
		self._lock = threading.Lock()

	@property
	def locations(self) -> list[str]:
		with self._lock:
			return sorted(self._trainers)

	def trainer_for(self, location_id: str) -> ModelTrainer:
		with self._lock:
			trainer = self._trainers.get(location_id)
			if trainer is None:
				trainer = ModelTrainer(self.config.model, clock=self._clock)
				self._trainers[location_id] = trainer
			return trainer

	def _existing_trainer(self, location_id: str) -> ModelTrainer:
		"""Registered trainer, or an unregistered blank one for unknown locations."""

		with self._lock:
			trainer = self._trainers.get(location_id)
		if trainer is None:
			trainer = ModelTrainer(self.config.model, clock=self._clock)
		return trainer

	def train(self, location_id: str, records: Sequence[MeasurementRecord]) -> bool:
		_check_location(location_id, records)
		return self.trainer_for(location_id).train(records)

	def generate_predictions(
		self,
		location_id: str,
		records: Sequence[MeasurementRecord],
		hours: Optional[int] = None,
	) -> list[ForecastRecord]:
		_check_location(location_id, records)
		generator = ForecastGenerator(
			self.trainer_for(location_id),
			self.config.forecast,
			rng=self.rng,
			clock=self._clock,
		)
		return generator.generate(records, hours)

	def evaluate(self, location_id: str, records: Sequence[MeasurementRecord]) -> Optional[dict[str, ModelMetrics]]:
		_check_location(location_id, records)
		return self._existing_trainer(location_id).evaluate(records)

	def model_info(self, location_id: str) -> dict:
		info = self._existing_trainer(location_id).model_info()
		info["location_id"] = location_id
		return info

	def save_models(self, location_id: str, models_dir: Optional[Path] = None) -> Path:
		target = location_dir(models_dir or self.config.models_dir, location_id)
		return self._existing_trainer(location_id).save(target)

	def load_models(self, location_id: str, models_dir: Optional[Path] = None) -> list[str]:
		target = location_dir(models_dir or self.config.models_dir, location_id)
		return self.trainer_for(location_id).load(target)


def run_training_pipeline(
	measurements_path: Path,
	config_path: Optional[Path] = None,
	location_id: Optional[str] = None,
) -> dict[str, dict]:
	"""Train and save models for every location found in a measurements CSV.

	Returns the model info of each location that was trained.
	"""

	config = load_config(config_path)
	records = load_measurements(measurements_path, location_id=location_id)
	if not records:
		raise ValueError(f"No measurements found in {measurements_path}")

	by_location: dict[str, list[MeasurementRecord]] = {}
	for record in records:
		by_location.setdefault(record.location_id, []).append(record)

	pipeline = ForecastPipeline(config)
	results = {}
	for location, location_records in by_location.items():
		if not pipeline.train(location, location_records):
			logger.warning("Skipping %s: models were not trained", location)
			continue
		pipeline.save_models(location)
		results[location] = pipeline.model_info(location)

	return results
