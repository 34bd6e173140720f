"""
ni watcher - service runner

Watches one folder and normalizes every file that settles there:
- Waits for writers to finish before touching a file
- Runs the external normalizer with a timeout
- Swaps the result in atomically and ignores its own writes
"""

import sys
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from domains.normalization.engine import NormalizationService
from domains.normalization.invoker import resolve_tool
from niwatch.utils.config import Settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

# Process exit codes
EXIT_OK = 0
EXIT_ROOT_LOST = 1
EXIT_CONFIG_ERROR = 2


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None):
    """Configure loguru sinks for the service."""
    logger.remove()
    logger.add(sys.stdout, format=LOG_FORMAT, level=level)
    if log_file is not None:
        logger.add(
            log_file,
            format=LOG_FORMAT,
            level=level,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )


def run(settings: Settings, stop_event: threading.Event) -> int:
    """
    Run the service until ``stop_event`` is set or the watch root is lost.

    Returns:
        Process exit code
    """
    logger.info(f"Watching folder: {settings.watch_folder}")
    tool = resolve_tool(settings.normalizer_path)
    if tool is None:
        logger.warning(
            f"Normalizer not found: {settings.normalizer_path}; "
            "jobs will fail until it is installed"
        )
    else:
        logger.info(f"Normalizer path: {tool}")

    service = NormalizationService.from_settings(settings)
    service.start()

    try:
        while not stop_event.is_set():
            if service.wait(timeout=1.0):
                break
    finally:
        service.stop()

    if service.root_lost is not None:
        return EXIT_ROOT_LOST
    return EXIT_OK
