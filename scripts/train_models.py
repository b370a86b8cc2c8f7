"""Train per-pollutant models from a measurements export and save them."""

import argparse
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from aqi_forecaster import run_training_pipeline

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("measurements", type=Path, help="CSV export of the reading store")
    parser.add_argument("--location", default=None, help="Only train this location")
    parser.add_argument("--config", type=Path, default=os.getenv("AQI_CONFIG_PATH"))
    args = parser.parse_args()

    print("=" * 60)
    print("AQI Forecaster - Model Training")
    print("=" * 60)

    results = run_training_pipeline(args.measurements, config_path=args.config, location_id=args.location)
    if not results:
        logger.warning("No location had enough data to train")
        return 1

    for location, info in results.items():
        print(f"\n{location}: trained {', '.join(info['models_trained']) or 'nothing'}")
        for pollutant in info["models_trained"]:
            metrics = info["model_metrics"][pollutant]
            print(
                f"  {pollutant.upper():5s} R²: {metrics['r2']:.4f}  "
                f"MSE: {metrics['mse']:.2f}  Accuracy: {metrics['accuracy']:.1f}%"
            )

    print("\n" + "=" * 60)
    print("Training completed successfully!")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
