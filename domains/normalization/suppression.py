"""Short-lived record of paths the pipeline itself is about to rewrite."""

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from loguru import logger

from niwatch.models.schemas import Fingerprint, fingerprint_of


@dataclass(slots=True)
class _Entry:
    expires_at: float
    fingerprint: Optional[Fingerprint]


class SuppressionSet:
    """
    Paths whose next filesystem event is self-generated.

    An entry is removed when a matching event is observed or when it expires,
    whichever comes first. When a fingerprint was recorded, the event only
    matches if the file on disk still carries it; anything else means an
    external write raced in and must not be hidden.
    """

    def __init__(
        self,
        window: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        stat: Callable[[Path], Fingerprint] = fingerprint_of,
    ):
        self.window = window
        self.clock = clock
        self.stat = stat
        self._entries: Dict[Path, _Entry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, path: Path) -> bool:
        with self._lock:
            entry = self._entries.get(path)
            return entry is not None and entry.expires_at > self.clock()

    def add(self, path: Path, fingerprint: Optional[Fingerprint] = None):
        with self._lock:
            self._entries[path] = _Entry(self.clock() + self.window, fingerprint)

    def discard(self, path: Path):
        with self._lock:
            self._entries.pop(path, None)

    def match(self, path: Path) -> bool:
        """
        Consume the entry for ``path`` if the event is self-generated.

        A fingerprint mismatch leaves the entry in place until it expires, so
        an unrelated event seen before the swap lands does not use it up.

        Returns:
            True if the event for ``path`` is self-generated and must be dropped
        """
        with self._lock:
            entry = self._entries.get(path)
            if entry is None:
                return False
            if entry.expires_at <= self.clock():
                del self._entries[path]
                return False

        if entry.fingerprint is not None:
            try:
                current = self.stat(path)
            except OSError:
                # Gone again; the quiescence detector will drop it
                current = entry.fingerprint

            if current != entry.fingerprint:
                logger.debug(f"Suppression fingerprint mismatch, passing event: {path}")
                return False

        with self._lock:
            if self._entries.get(path) is entry:
                del self._entries[path]
        return True

    def purge(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [p for p, e in self._entries.items() if e.expires_at <= now]
            for path in expired:
                del self._entries[path]
        return len(expired)
