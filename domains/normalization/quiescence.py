"""
Quiescence detection.

A file is ready once its size and modification time have stayed the same for
the quiet interval. Each write episode yields exactly one ready signal. The
detector is not thread-safe: only the feeder thread may call it.
"""

import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger

from niwatch.models.schemas import (
    EventKind,
    FileEvent,
    Fingerprint,
    PendingFile,
    PendingState,
    fingerprint_of,
)


class QuiescenceDetector:
    """Tracks PendingFiles until they stop changing."""

    def __init__(
        self,
        quiet_interval: float = 2.0,
        sample_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        stat: Callable[[Path], Fingerprint] = fingerprint_of,
    ):
        """
        Args:
            quiet_interval: Seconds a file must stay unchanged
            sample_interval: Minimum seconds between two samples of one file
            clock: Monotonic clock
            stat: Returns the current fingerprint, raises OSError if unreadable
        """
        self.quiet_interval = quiet_interval
        self.sample_interval = sample_interval
        self.clock = clock
        self.stat = stat
        self._pending: Dict[Path, PendingFile] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, path: Path) -> bool:
        return path in self._pending

    def get(self, path: Path) -> Optional[PendingFile]:
        return self._pending.get(path)

    def observe(self, event: FileEvent):
        """Start or refresh tracking of the event's path."""
        if event.kind is EventKind.REMOVED:
            self._drop(event.path, "removed")
            return

        self._sample(event.path, self.clock())

    def tick(self) -> List[Path]:
        """
        Re-sample due PendingFiles.

        Returns:
            Paths that became quiescent; they are no longer tracked
        """
        now = self.clock()
        ready: List[Path] = []

        for path in list(self._pending):
            pending = self._pending[path]
            # Never declare a file ready on a stale sample
            due = now - pending.last_sampled >= self.sample_interval
            quiet = now - pending.stable_since >= self.quiet_interval
            if due or quiet:
                pending = self._sample(path, now)
                if pending is None:
                    continue

            if (
                pending.state is PendingState.SETTLING
                and now - pending.stable_since >= self.quiet_interval
            ):
                del self._pending[path]
                ready.append(path)
                logger.debug(f"Quiescent: {path}")

        return ready

    def _sample(self, path: Path, now: float) -> Optional[PendingFile]:
        try:
            current = self.stat(path)
        except OSError:
            # Vanished or unreadable before settling: an abandoned write
            self._drop(path, "unreadable")
            return None

        pending = self._pending.get(path)
        if pending is None:
            pending = PendingFile(
                path=path,
                last_seen_size=current.size,
                last_seen_mtime=current.mtime_ns,
                stable_since=now,
                last_sampled=now,
            )
            self._pending[path] = pending
            logger.debug(f"Tracking: {path} ({current.size} bytes)")
            return pending

        if current != pending.fingerprint:
            pending.last_seen_size = current.size
            pending.last_seen_mtime = current.mtime_ns
            pending.stable_since = now
            pending.state = PendingState.WRITING
        else:
            pending.state = PendingState.SETTLING
        pending.last_sampled = now
        return pending

    def _drop(self, path: Path, reason: str):
        if self._pending.pop(path, None) is not None:
            logger.debug(f"Dropped pending file ({reason}): {path}")
