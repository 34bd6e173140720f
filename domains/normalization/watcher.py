"""
Filesystem subscription for the watch root.

Wraps a watchdog observer and turns its callbacks into FileEvent records on a
bounded queue. Duplicate notifications for the same path are coalesced here;
deciding when a file has finished being written is left to the quiescence
detector.
"""

import queue
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from domains.normalization.errors import WatchRootLost
from niwatch.models.schemas import EventKind, FileEvent
from niwatch.utils.helpers import matches_include, normalise_path, should_exclude_path


def coalesce_events(events: Iterable[FileEvent]) -> List[FileEvent]:
    """
    Collapse events for the same path into one.

    The latest kind wins; paths keep the order in which they were first seen.
    """
    merged: dict[Path, FileEvent] = {}
    for event in events:
        merged[event.path] = event
    return list(merged.values())


class NormalizerEventHandler(FileSystemEventHandler):
    """Translates watchdog callbacks into FileEvents on a bounded queue."""

    def __init__(
        self,
        root: Path,
        events: "queue.Queue",
        include_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize event handler.

        Args:
            root: Resolved watch root
            events: Bounded queue shared with the watcher
            include_patterns: File name globs to accept (empty accepts all)
            exclude_patterns: Extra globs to ignore
            clock: Monotonic clock used to stamp events
        """
        super().__init__()
        self.root = root
        self.events = events
        self.include_patterns = include_patterns or []
        self.exclude_patterns = exclude_patterns or []
        self.clock = clock
        self.closed = threading.Event()

    def should_process(self, path: Path) -> bool:
        """
        Check if path should be processed.

        Args:
            path: File path

        Returns:
            True if should process, False otherwise
        """
        if path != self.root and self.root not in path.parents:
            return False

        if should_exclude_path(path, self.exclude_patterns):
            return False

        return matches_include(path, self.include_patterns)

    def on_created(self, event: FileSystemEvent):
        """Handle file creation."""
        if event.is_directory:
            return
        self._emit(Path(event.src_path), EventKind.CREATED)

    def on_modified(self, event: FileSystemEvent):
        """Handle file modification."""
        # Directory modifications are noise
        if event.is_directory:
            return
        self._emit(Path(event.src_path), EventKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent):
        """Handle deletion; losing the root itself is terminal."""
        path = Path(event.src_path)
        if event.is_directory:
            if path == self.root:
                self._put(WatchRootLost(self.root, "watch root deleted"))
            return
        self._emit(path, EventKind.REMOVED)

    def on_moved(self, event: FileSystemEvent):
        """Handle move/rename: leaving the source, arriving at the destination."""
        src = Path(event.src_path)
        dest = Path(getattr(event, "dest_path", "") or "")

        if event.is_directory:
            if src == self.root:
                self._put(WatchRootLost(self.root, f"watch root moved to {dest}"))
            return

        self._emit(src, EventKind.REMOVED)
        if str(dest):
            self._emit(dest, EventKind.RENAMED)

    def _emit(self, path: Path, kind: EventKind):
        if not self.should_process(path):
            return
        self._put(FileEvent(path=path, kind=kind, observed_at=self.clock()))

    def _put(self, item):
        # Blocking here is the backpressure on the observer thread
        while not self.closed.is_set():
            try:
                self.events.put(item, timeout=0.1)
                return
            except queue.Full:
                continue


class PathWatcher:
    """Owns the filesystem subscription for a single watch root."""

    def __init__(
        self,
        root: Path,
        recursive: bool = False,
        queue_size: int = 1024,
        coalesce_window: float = 0.05,
        include_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        observer_factory: Callable = Observer,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.root = normalise_path(root)
        self.recursive = recursive
        self.coalesce_window = coalesce_window
        self.queue_size = queue_size
        self.events: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self.handler = NormalizerEventHandler(
            self.root,
            self.events,
            include_patterns=include_patterns,
            exclude_patterns=exclude_patterns,
            clock=clock,
        )
        self._observer_factory = observer_factory
        self._observer = None
        self._lost: Optional[WatchRootLost] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self):
        """
        Subscribe to change notifications for the root.

        Raises:
            WatchRootLost: If the root is not an accessible directory
        """
        if not self.root.is_dir():
            raise WatchRootLost(self.root, "not an accessible directory")

        observer = self._observer_factory()
        try:
            observer.schedule(self.handler, str(self.root), recursive=self.recursive)
            observer.daemon = True
            observer.start()
        except OSError as e:
            raise WatchRootLost(self.root, f"cannot watch: {e}") from e

        self._observer = observer
        logger.success(f"Started watching: {self.root} (recursive={self.recursive})")

    def poll(self, timeout: float) -> List[FileEvent]:
        """
        Next batch of coalesced events.

        Blocks up to ``timeout`` for the first event, then gathers whatever
        arrives within the coalescing window.

        Raises:
            WatchRootLost: Once the root is gone; the watcher is stopped
        """
        if self._lost is not None:
            raise self._lost

        try:
            first = self.events.get(timeout=timeout)
        except queue.Empty:
            self._check_root()
            return []

        batch = [first]
        deadline = time.monotonic() + self.coalesce_window
        while len(batch) < self.queue_size:
            remaining = deadline - time.monotonic()
            try:
                if remaining > 0:
                    batch.append(self.events.get(timeout=remaining))
                else:
                    batch.append(self.events.get_nowait())
            except queue.Empty:
                break

        for item in batch:
            if isinstance(item, WatchRootLost):
                self._fail(item)

        self._check_root()
        return coalesce_events(batch)

    def _check_root(self):
        if not self.root.is_dir():
            self._fail(WatchRootLost(self.root, "watch root is no longer a directory"))
        if self._observer is not None and not self._observer.is_alive():
            self._fail(WatchRootLost(self.root, "observer thread stopped"))

    def _fail(self, error: WatchRootLost):
        logger.error(str(error))
        self._lost = error
        self.stop()
        raise error

    def stop(self) -> int:
        """
        Cancel the subscription and drain outstanding events.

        Returns:
            Number of queued events discarded
        """
        self.handler.closed.set()

        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            if observer is not threading.current_thread():
                observer.join(timeout=5)
            logger.info(f"Stopped watching: {self.root}")

        drained = 0
        while True:
            try:
                self.events.get_nowait()
                drained += 1
            except queue.Empty:
                break

        if drained:
            logger.debug(f"Discarded {drained} queued event(s) on stop")
        return drained
