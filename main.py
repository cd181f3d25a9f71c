"""CLI entrypoint: replay upload notifications through the correlator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace

from dotenv import load_dotenv

from dispatcher import Dispatcher
from errors import ConfigurationError
from handler import IngestionHandler, build_runner, build_store
from job_runners import LoggingJobRunner
from models import IngestionResult
from settings import Settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Replay recording uploads through the pair correlator")
    parser.add_argument("keys", nargs="+", help="Object keys to ingest, in arrival order")
    parser.add_argument("--bucket", default="local", help="Bucket name reported in the notification")
    parser.add_argument(
        "--store",
        choices=["memory", "dynamodb"],
        default="memory",
        help="Correlation store backend. 'memory' keeps records for this run only.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log merge jobs instead of invoking the configured job runner",
    )
    parser.add_argument("--window-minutes", type=float, default=None, help="Override MATCH_WINDOW_MINUTES")
    return parser.parse_args(argv)


def run(keys: list[str], bucket: str, handler: IngestionHandler) -> list[IngestionResult]:
    """Ingest each key in order and print one JSON line per outcome."""
    results: list[IngestionResult] = []
    for key in keys:
        result = handler.handle(bucket, key)
        results.append(result)
        print(json.dumps(result.to_dict()))

    logging.info(
        "Replay complete. processed=%s failed=%s",
        len(results),
        sum(1 for result in results if result.is_failure),
    )
    return results


def main(argv: list[str] | None = None) -> int:
    """Initialize config and replay the given keys."""
    load_dotenv()
    args = parse_args(argv)

    try:
        settings = Settings.from_env()
        if args.window_minutes is not None:
            settings = replace(settings, match_window_minutes=args.window_minutes)
            settings.validate()
        logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(message)s")

        runner = LoggingJobRunner() if args.dry_run else build_runner(settings)
        store = build_store(settings, backend=args.store)
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
        logging.error("Invalid configuration: %s", exc)
        return 2

    handler = IngestionHandler(store=store, dispatcher=Dispatcher(runner), settings=settings)
    results = run(args.keys, args.bucket, handler)
    return 1 if any(result.is_failure for result in results) else 0


if __name__ == "__main__":
    sys.exit(main())
