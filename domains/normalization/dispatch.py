"""
Per-path admission gate and worker pool.

The active-job map is the only structure shared between the feeder thread and
the workers; it is guarded by a single lock that is never held while a worker
blocks on the tool or the filesystem.
"""

import queue
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from loguru import logger

from niwatch.models.schemas import Job, JobStatus

_STOP = object()


class DispatchQueue:
    """At most one job per path; distinct paths run in parallel."""

    def __init__(
        self,
        handler: Callable[[Job], None],
        worker_count: int = 4,
        queue_size: int = 64,
    ):
        """
        Args:
            handler: Runs a job to a terminal status (blocking)
            worker_count: Number of worker threads
            queue_size: Bounded work queue length
        """
        self.handler = handler
        self.worker_count = worker_count
        self._work: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._active: Dict[Path, Job] = {}
        self._rerun: Set[Path] = set()
        self._workers: List[threading.Thread] = []
        self._accepting = False

    def start(self):
        with self._lock:
            if self._workers:
                return
            self._accepting = True
            for index in range(self.worker_count):
                worker = threading.Thread(
                    target=self._worker_loop,
                    name=f"ni-worker-{index}",
                    daemon=True,
                )
                worker.start()
                self._workers.append(worker)
        logger.info(f"Started {self.worker_count} normalization worker(s)")

    def admit(self, path: Path) -> bool:
        """
        Create and schedule a job for ``path``.

        Returns:
            False if a job for the path is already in flight; the signal is
            then remembered as a single pending re-run
        """
        with self._lock:
            if not self._accepting:
                logger.debug(f"Not accepting work, dropped: {path}")
                return False
            existing = self._active.get(path)
            if existing is not None:
                if existing.status is JobStatus.QUEUED and existing.attempts == 0:
                    # Not started yet; it will read the latest contents
                    return False
                if path not in self._rerun:
                    logger.debug(f"Job in flight, re-run queued: {path}")
                self._rerun.add(path)
                return False
            job = Job(path=path)
            self._active[path] = job

        self._work.put(job)
        logger.info(f"Queued: {path}")
        return True

    def active_jobs(self) -> Dict[Path, Job]:
        with self._lock:
            return dict(self._active)

    def pending_reruns(self) -> Set[Path]:
        with self._lock:
            return set(self._rerun)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job is active; returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._active, timeout=timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Stop accepting work and stop the workers.

        Running and queued jobs are allowed to finish; pending re-runs are
        dropped.
        """
        with self._lock:
            self._accepting = False
            self._rerun.clear()
            workers, self._workers = self._workers, []

        for _ in workers:
            self._work.put(_STOP)

        if wait:
            for worker in workers:
                worker.join(timeout=timeout)
        logger.info("Normalization workers stopped")

    def _worker_loop(self):
        while True:
            job = self._work.get()
            if job is _STOP:
                return
            # Coalesced re-runs stay on this worker; the path remains active
            while job is not None:
                try:
                    self.handler(job)
                except Exception:
                    logger.exception(f"Worker failed on {job.path}")
                job = self._finish(job)

    def _finish(self, job: Job) -> Optional[Job]:
        with self._lock:
            self._active.pop(job.path, None)
            follow_up = None
            if job.path in self._rerun and self._accepting:
                follow_up = Job(path=job.path)
                self._active[job.path] = follow_up
            self._rerun.discard(job.path)
            if not self._active:
                self._idle.notify_all()

        if follow_up is not None:
            logger.info(f"Re-running after coalesced signal: {job.path}")
        return follow_up
