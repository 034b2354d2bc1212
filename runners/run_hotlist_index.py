from pathlib import Path
import argparse
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.config import HOTLIST_DB_EXT, model_file
from pipeline.logging_utils import get_logger, setup_logging
from search.hotlist_indexer import HotlistIndexer
from search.reference_loader import ReferenceLoader
from storage.fingerprint_store import FingerprintStore


DATA_DIR = ROOT_DIR / "data"
MODEL_DIR = str(DATA_DIR / "models")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Add reference tracks to a stream's hotlist database")
    parser.add_argument("--country", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--model-dir", default=MODEL_DIR)
    parser.add_argument("--class", dest="class_name", required=True, help="Class stored with each track, e.g. ads")
    parser.add_argument("files", nargs="+", help="Reference audio files")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    setup_logging()
    log = get_logger("hotlist_index")

    Path(args.model_dir).mkdir(parents=True, exist_ok=True)
    store = FingerprintStore(db_path=model_file(args.model_dir, args.country, args.name, HOTLIST_DB_EXT))
    store.init_db()

    indexer = HotlistIndexer(store=store, loader=ReferenceLoader())

    failed = 0
    for path in args.files:
        try:
            indexer.index(path, args.class_name)
        except (OSError, RuntimeError) as exc:
            log.error("could not index %s: %s", path, exc)
            failed += 1

    log.info("hotlist now holds %d tracks", store.count_tracks())
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
