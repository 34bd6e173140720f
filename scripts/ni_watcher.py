#!/usr/bin/env python3
"""Command line entrypoint for the ni watcher service.

Reads settings from the environment (and ``.env``), lets a few be overridden
on the command line, and runs until SIGINT/SIGTERM or until the watch folder
disappears.
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from domains.normalization.engine import log_pipeline_event
from domains.normalization.errors import ConfigurationError, WatchRootLost
from niwatch.main import (
    EXIT_CONFIG_ERROR,
    EXIT_ROOT_LOST,
    configure_logging,
    run,
)
from niwatch.models.schemas import ConfigurationFailed
from niwatch.utils.config import load_settings


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""

    parser = argparse.ArgumentParser(
        description="Normalize files as they appear in a watched folder.",
    )
    parser.add_argument(
        "--watch-folder",
        type=Path,
        default=None,
        help="Folder to watch (default: $WATCH_FOLDER).",
    )
    parser.add_argument(
        "--recursive",
        action="store_true",
        default=None,
        help="Also watch subdirectories.",
    )
    parser.add_argument(
        "--normalizer",
        default=None,
        help="Normalizer executable (default: $NORMALIZER_PATH or 'ni').",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of files normalized in parallel.",
    )
    parser.add_argument(
        "--quiet-interval",
        type=float,
        default=None,
        help="Seconds a file must stay unchanged before it is normalized.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds before a normalizer run is killed.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write a rotating log file here.",
    )

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    configure_logging("INFO")

    try:
        settings = load_settings(
            watch_folder=args.watch_folder,
            recursive=args.recursive,
            normalizer_path=args.normalizer,
            worker_count=args.workers,
            quiet_interval=args.quiet_interval,
            normalizer_timeout=args.timeout,
            log_level=args.log_level,
            log_file=args.log_file,
        )
    except ConfigurationError as e:
        log_pipeline_event(ConfigurationFailed(error=str(e)))
        return EXIT_CONFIG_ERROR

    configure_logging(settings.log_level, settings.log_file)

    stop_event = threading.Event()

    def _signal_handler(signum, frame):  # noqa: D401
        logger.info("Received signal {}, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        return run(settings, stop_event)
    except WatchRootLost as e:
        logger.error(str(e))
        return EXIT_ROOT_LOST


if __name__ == "__main__":  # pragma: no cover - CLI bridge
    sys.exit(main())
