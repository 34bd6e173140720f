"""
Watch-dispatch engine.

Wires the pipeline together:

    PathWatcher -> QuiescenceDetector -> DispatchQueue -> invoker -> ReplacePolicy

with the RetryManager wrapping each job's invoke-and-replace attempts. One
feeder thread owns the watcher and the quiescence state; a worker pool runs
the jobs.
"""

import threading
import time
from collections import Counter
from typing import Callable, Dict, Optional

from loguru import logger

from domains.normalization.dispatch import DispatchQueue
from domains.normalization.errors import SourceMissing, WatchRootLost
from domains.normalization.invoker import SubprocessNormalizer, Transformer
from domains.normalization.quiescence import QuiescenceDetector
from domains.normalization.replace import ReplacePolicy
from domains.normalization.retry import RetryManager
from domains.normalization.suppression import SuppressionSet
from domains.normalization.watcher import PathWatcher
from niwatch.models.schemas import (
    EventKind,
    FileEvent,
    Job,
    JobFailed,
    JobStatus,
    JobSucceeded,
    PipelineEvent,
    RootLost,
    fingerprint_of,
)
from niwatch.utils.config import Settings

EventCallback = Callable[[PipelineEvent], None]


def log_pipeline_event(event: PipelineEvent):
    """Default operator sink: report events through the log."""
    if isinstance(event, RootLost):
        logger.error(f"Watch root lost: {event.root} ({event.reason})")
    elif isinstance(event, JobFailed):
        logger.error(
            f"Normalization failed ({event.status.value}) after {event.attempts} "
            f"attempt(s), original kept: {event.path}: {event.error}"
        )
    elif isinstance(event, JobSucceeded):
        logger.success(f"Normalized: {event.path}")
    else:
        logger.error(f"Configuration error: {event.error}")


class NormalizationService:
    """Long-running watcher that normalizes files as they settle."""

    def __init__(
        self,
        watcher: PathWatcher,
        detector: QuiescenceDetector,
        transformer: Transformer,
        retry: RetryManager,
        suppression: SuppressionSet,
        worker_count: int = 4,
        work_queue_size: int = 64,
        poll_interval: float = 0.1,
        on_event: Optional[EventCallback] = None,
    ):
        self.watcher = watcher
        self.detector = detector
        self.transformer = transformer
        self.retry = retry
        self.suppression = suppression
        self.replace = ReplacePolicy(suppression)
        self.dispatch = DispatchQueue(
            self._run_job,
            worker_count=worker_count,
            queue_size=work_queue_size,
        )
        self.poll_interval = poll_interval
        self.on_event = on_event or log_pipeline_event

        self._stop = threading.Event()
        self._feeder: Optional[threading.Thread] = None
        self._root_lost: Optional[WatchRootLost] = None
        self._stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        on_event: Optional[EventCallback] = None,
        transformer: Optional[Transformer] = None,
    ) -> "NormalizationService":
        """Build a service from validated settings."""
        watcher = PathWatcher(
            settings.watch_folder,
            recursive=settings.recursive,
            queue_size=settings.event_queue_size,
            coalesce_window=settings.coalesce_window,
            include_patterns=settings.get_include_patterns(),
            exclude_patterns=settings.get_exclude_patterns(),
        )
        detector = QuiescenceDetector(
            quiet_interval=settings.quiet_interval,
            sample_interval=settings.sample_interval,
        )
        if transformer is None:
            transformer = SubprocessNormalizer(
                settings.normalizer_path,
                timeout=settings.normalizer_timeout,
                output_mode=settings.output_mode,
                extra_args=settings.get_normalizer_args(),
            )
        retry = RetryManager(
            max_retries=settings.max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            exponential_base=settings.retry_backoff_base,
            transient_exit_codes=settings.get_transient_exit_codes(),
            retry_spawn_errors=settings.retry_spawn_errors,
        )
        return cls(
            watcher,
            detector,
            transformer,
            retry,
            SuppressionSet(window=settings.suppression_window),
            worker_count=settings.worker_count,
            work_queue_size=settings.work_queue_size,
            poll_interval=min(settings.sample_interval, 0.25),
            on_event=on_event,
        )

    # Lifecycle -----------------------------------------------------------------

    @property
    def root_lost(self) -> Optional[WatchRootLost]:
        return self._root_lost

    def start(self):
        """
        Start the workers and the filesystem subscription.

        Raises:
            WatchRootLost: If the root cannot be watched
        """
        self.dispatch.start()
        try:
            self.watcher.start()
        except WatchRootLost:
            self.dispatch.shutdown()
            raise

        self._stop.clear()
        self._feeder = threading.Thread(target=self._feed, name="ni-feeder", daemon=True)
        self._feeder.start()
        logger.success("Normalization service started")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the feeder exits; returns False on timeout."""
        if self._feeder is None:
            return True
        self._feeder.join(timeout)
        return not self._feeder.is_alive()

    def stop(self, timeout: Optional[float] = None):
        """
        Stop watching and drain in-flight jobs.

        Running jobs finish or hit their timeout; no replace is interrupted.
        """
        logger.info("Stopping normalization service...")
        self._stop.set()
        if self._feeder is not None and self._feeder is not threading.current_thread():
            self._feeder.join()
        self.watcher.stop()
        self.dispatch.shutdown(wait=True, timeout=timeout)
        logger.info(f"Service statistics: {dict(self.stats())}")
        logger.success("Normalization service stopped")

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def _count(self, key: str):
        with self._stats_lock:
            self._stats[key] += 1

    # Feeder --------------------------------------------------------------------

    def _feed(self):
        while not self._stop.is_set():
            try:
                batch = self.watcher.poll(self.poll_interval)
            except WatchRootLost as e:
                self._root_lost = e
                self._stop.set()
                self.on_event(RootLost(root=str(e.root), reason=e.reason))
                return

            for event in batch:
                self.handle_event(event)

            self.pump()

    def handle_event(self, event: FileEvent):
        """Route one watcher event; self-generated events are dropped."""
        try:
            if event.kind is not EventKind.REMOVED and self.suppression.match(event.path):
                self._count("suppressed")
                logger.debug(f"Suppressed self-generated event: {event.kind.value} {event.path}")
                return
            self.detector.observe(event)
        except Exception:
            logger.exception(f"Dropped malformed event: {event}")

    def pump(self):
        """Admit quiescent files and expire suppression entries."""
        for path in self.detector.tick():
            self._count("ready")
            if self.dispatch.admit(path):
                self._count("admitted")
            else:
                self._count("coalesced")
        self.suppression.purge()

    # Jobs ----------------------------------------------------------------------

    def _run_job(self, job: Job):
        started = time.monotonic()
        self.retry.execute(job, self._attempt, self._backoff_wait)
        duration_ms = (time.monotonic() - started) * 1000

        if job.status is JobStatus.SUCCEEDED:
            self._count("succeeded")
            self.on_event(JobSucceeded(
                path=str(job.path), attempts=job.attempts, duration_ms=duration_ms,
            ))
        else:
            self._count("failed")
            self.on_event(JobFailed(
                path=str(job.path), attempts=job.attempts,
                status=job.status, error=job.last_error,
            ))

    def _attempt(self, job: Job):
        try:
            job.fingerprint = fingerprint_of(job.path)
        except OSError as e:
            raise SourceMissing(job.path, f"cannot read original: {e}") from e

        logger.info(f"Normalizing (attempt {job.attempts}): {job.path}")
        result = self.transformer.run(job.path)
        self.replace.apply(job.path, result, expected=job.fingerprint)

    def _backoff_wait(self, delay: float) -> bool:
        return not self._stop.wait(delay)
