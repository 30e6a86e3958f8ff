#!/usr/bin/env python3
import argparse
import logging
import os
import sys
from dataclasses import replace

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from attribution.config import Settings  # noqa: E402
from attribution.dependencies import build_container  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire attributions whose broadcast round has run out.")
    parser.add_argument("--db-path", default="", help="SQLite database. Defaults to ATTRIBUTION_DB_PATH.")
    parser.add_argument("--verbose", action="store_true", help="Log every state transition.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    settings = Settings.from_env()
    if args.db_path:
        settings = replace(settings, db_path=args.db_path)

    container = build_container(settings)
    try:
        expired = container.coordinator.expire_due()
        container.dispatcher.flush(timeout=10.0)
    finally:
        container.close()

    print(f"Expired attributions: {len(expired)}")
    for attribution_id in expired:
        print(f"  - {attribution_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
