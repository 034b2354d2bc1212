from pathlib import Path
import argparse
import asyncio
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.config import PipelineConfig
from pipeline.errors import PipelineError
from pipeline.logging_utils import get_logger, setup_logging
from pipeline.prediction_coordinator import PredictionCoordinator
from pipeline.sinks import JsonLinesSink


DATA_DIR = ROOT_DIR / "data"
MODEL_DIR = str(DATA_DIR / "models")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the predictors over an audio file or a list of records")
    parser.add_argument("--country", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--model-dir", default=MODEL_DIR, help="Directory holding <country>_<name>.pt/.sqlite")
    inputs = parser.add_mutually_exclusive_group(required=True)
    inputs.add_argument("--file", help="Audio file to analyse")
    inputs.add_argument("--records", nargs="+", help="Ordered audio records of one session")
    parser.add_argument("--pred-interval", type=float, default=1.0, help="Seconds of audio per chunk")
    parser.add_argument("--save-duration", type=int, default=10, help="Chunks per record file")
    parser.add_argument("--no-ml", action="store_true")
    parser.add_argument("--no-hotlist", action="store_true")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    setup_logging(args.log_level)
    log = get_logger("runner")

    config = PipelineConfig(
        pred_interval=args.pred_interval,
        save_duration=args.save_duration,
        enable_predictor_ml=not args.no_ml,
        enable_predictor_hotlist=not args.no_hotlist,
    )

    try:
        coordinator = PredictionCoordinator(
            country=args.country,
            name=args.name,
            model_path=args.model_dir,
            sink=JsonLinesSink(sys.stdout),
            file=args.file,
            records=args.records,
            config=config,
            logger=get_logger("predictor"),
        )
        asyncio.run(coordinator.run())
    except PipelineError as exc:
        log.error("run failed: %s", exc)
        return 2

    log.info("processed %d chunks", coordinator.chunks_processed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
