"""Initialize the metadata database schema and ensure the local bucket root exists."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure src/ is on sys.path so we can import shared logging and DB helpers.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.append(str(SRC_ROOT))

from utils.logging import get_logger  # noqa: E402
from photo_diary.config import load_settings  # noqa: E402
from photo_diary.db import open_session  # noqa: E402
from photo_diary.db_helpers import redact_database_url, sqlite_path_from_target  # noqa: E402

LOGGER = get_logger(__name__)


def _init_primary_db(target: str) -> None:
    session = open_session(target)
    session.close()
    LOGGER.info(
        "init_primary_db_ok",
        extra={"target": redact_database_url(target), "sqlite_path": str(sqlite_path_from_target(target) or "")},
    )


def _init_bucket_root(root: Path) -> None:
    root.mkdir(parents=True, exist_ok=True)
    LOGGER.info("init_bucket_root_ok", extra={"root": str(root)})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the metadata schema and local bucket root.")
    parser.add_argument(
        "--data-db",
        type=str,
        default=None,
        help="Metadata database URL or path. Defaults to databases.primary_url in settings.yaml.",
    )
    parser.add_argument(
        "--bucket-root",
        dest="bucket_root",
        type=str,
        default=None,
        help="Local bucket directory. Defaults to storage.root in settings.yaml.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings()
    primary_target = args.data_db or settings.databases.primary_url
    _init_primary_db(primary_target)

    if args.bucket_root or settings.storage.backend == "local":
        bucket_root = Path(args.bucket_root or settings.storage.root).expanduser().resolve()
        _init_bucket_root(bucket_root)

    LOGGER.info(
        "init_databases_complete",
        extra={"primary": redact_database_url(primary_target), "storage_backend": settings.storage.backend},
    )


if __name__ == "__main__":
    main()
