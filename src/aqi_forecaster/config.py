"""Configuration loading utilities for the AQI forecaster."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


@dataclass
class ModelConfig:
	"""Training parameters shared by every pollutant model."""

	min_data_points: int = 50
	training_interval_seconds: float = 3600.0
	validation_fraction: float = 0.2
	accuracy_tolerance: float = 0.2


@dataclass
class ForecastConfig:
	"""Forecast generation parameters."""

	default_horizon_hours: int = 24
	trend_history: int = 48


@dataclass
class PipelineConfig:
	"""Top-level configuration for the forecasting pipeline."""

	model: ModelConfig = field(default_factory=ModelConfig)
	forecast: ForecastConfig = field(default_factory=ForecastConfig)
	models_dir: Path = Path("models")


DEFAULT_CONFIG_PATH = Path("config/config.yaml")


def _resolve_path(path_value: str, base_dir: Optional[Path] = None) -> Path:
	"""Resolve a path string relative to ``base_dir`` when it is not absolute."""

	path = Path(path_value)
	if not path.is_absolute() and base_dir is not None:
		path = base_dir / path
	return path


def load_config(config_path: Optional[Path] = None) -> PipelineConfig:
	"""Load pipeline configuration from YAML.

	Every key is optional; missing keys keep the dataclass defaults.
	"""

	config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

	if config_path.is_absolute():
		base_dir = config_path.parent.parent
	else:
		# Look for the project root from the working directory
		current = Path.cwd()
		if (current / config_path).exists():
			base_dir = current
		elif (current.parent / config_path).exists():
			base_dir = current.parent
		else:
			base_dir = current
		config_path = base_dir / config_path

	if not config_path.exists():
		raise FileNotFoundError(f"Configuration file not found at {config_path}")

	with open(config_path, "r", encoding="utf-8") as fp:
		payload = yaml.safe_load(fp) or {}

	model_section = payload.get("model", {}) or {}
	forecast_section = payload.get("forecast", {}) or {}

	model_cfg = ModelConfig(
		min_data_points=int(model_section.get("min_data_points", 50)),
		training_interval_seconds=float(model_section.get("training_interval_seconds", 3600)),
		validation_fraction=float(model_section.get("validation_fraction", 0.2)),
		accuracy_tolerance=float(model_section.get("accuracy_tolerance", 0.2)),
	)
	forecast_cfg = ForecastConfig(
		default_horizon_hours=int(forecast_section.get("default_horizon_hours", 24)),
		trend_history=int(forecast_section.get("trend_history", 48)),
	)

	return PipelineConfig(
		model=model_cfg,
		forecast=forecast_cfg,
		models_dir=_resolve_path(payload.get("models_dir", "models"), base_dir),
	)
