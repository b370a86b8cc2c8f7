"""Generate hourly forecasts for one location and write them to CSV."""

import argparse
import logging
import os
from pathlib import Path

import pandas as pd
from dotenv import load_dotenv

from aqi_forecaster import ForecastPipeline, load_config, load_measurements, summarize_confidence

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("measurements", type=Path, help="CSV export of the reading store")
    parser.add_argument("location", help="Location to forecast")
    parser.add_argument("--hours", type=int, default=None)
    parser.add_argument("--output", type=Path, default=Path("forecasts.csv"))
    parser.add_argument("--config", type=Path, default=os.getenv("AQI_CONFIG_PATH"))
    args = parser.parse_args()

    config = load_config(args.config)
    records = load_measurements(args.measurements, location_id=args.location)

    pipeline = ForecastPipeline(config)
    try:
        pipeline.load_models(args.location)
    except FileNotFoundError as e:
        logger.info("No saved models for %s, training on demand: %s", args.location, e)

    forecasts = pipeline.generate_predictions(args.location, records, hours=args.hours)

    rows = [f.to_dict() for f in forecasts]
    for row in rows:
        row.pop("features")
    pd.DataFrame(rows).to_csv(args.output, index=False)

    print(f"Wrote {len(rows)} forecasts to {args.output}")
    print(summarize_confidence(forecasts).to_string(index=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
