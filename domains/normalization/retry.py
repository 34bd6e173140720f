"""
Retry logic for normalization jobs.

Classifies job failures as transient or permanent and drives the per-job
state machine:

    QUEUED -> RUNNING -> SUCCEEDED
                      -> FAILED_TRANSIENT -> (backoff) -> QUEUED
                      -> FAILED_PERMANENT
"""

import time
from enum import Enum
from typing import Callable, Collection, Optional

from loguru import logger

from domains.normalization.errors import (
    FilesystemContention,
    JobError,
    NonZeroExit,
    NormalizerTimeout,
    ProcessSpawnError,
    SourceChanged,
)
from niwatch.models.schemas import Job, JobStatus


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RetryManager:
    """Bounded exponential backoff around a job attempt."""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        transient_exit_codes: Collection[int] = (),
        retry_spawn_errors: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_retries: Retries allowed after the first attempt
            initial_delay: Backoff before the first retry, seconds
            max_delay: Backoff cap, seconds
            exponential_base: Growth factor between retries
            transient_exit_codes: Tool exit codes to treat as transient
            retry_spawn_errors: Treat a tool that cannot start as transient
            clock: Monotonic clock for job timestamps
        """
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.transient_exit_codes = frozenset(transient_exit_codes)
        self.retry_spawn_errors = retry_spawn_errors
        self.clock = clock

    def classify(self, error: BaseException) -> FailureClass:
        """Decide whether ``error`` is worth retrying."""
        if isinstance(error, (NormalizerTimeout, FilesystemContention, SourceChanged)):
            return FailureClass.TRANSIENT
        if isinstance(error, NonZeroExit) and error.exit_code in self.transient_exit_codes:
            return FailureClass.TRANSIENT
        if isinstance(error, ProcessSpawnError) and self.retry_spawn_errors:
            return FailureClass.TRANSIENT
        return FailureClass.PERMANENT

    def backoff(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based)."""
        delay = self.initial_delay * self.exponential_base ** max(retry - 1, 0)
        return min(delay, self.max_delay)

    def execute(
        self,
        job: Job,
        attempt: Callable[[Job], None],
        wait: Callable[[float], bool],
    ) -> Job:
        """
        Run ``attempt`` until it succeeds, fails permanently or the budget is spent.

        Args:
            job: Job to drive; mutated in place
            attempt: One invoke-and-replace pass; raises on failure
            wait: Sleeps for the given delay; returns False if interrupted

        Returns:
            The job in its final status
        """
        job.started_at = self.clock()

        while True:
            job.status = JobStatus.RUNNING
            job.attempts += 1
            try:
                attempt(job)
            except Exception as e:
                error: Optional[BaseException] = e
            else:
                error = None

            if error is None:
                job.status = JobStatus.SUCCEEDED
                job.last_error = None
                if job.retries:
                    logger.info(f"Retry succeeded on attempt {job.attempts}: {job.path}")
                break

            job.last_error = str(error)
            if not isinstance(error, JobError):
                logger.opt(exception=error).error(f"Unexpected failure for {job.path}")

            if self.classify(error) is FailureClass.PERMANENT:
                job.status = JobStatus.FAILED_PERMANENT
                logger.error(f"Permanent failure after {job.attempts} attempt(s): {error}")
                break

            if job.retries >= self.max_retries:
                job.status = JobStatus.FAILED_PERMANENT
                logger.error(
                    f"All {job.attempts} attempts failed for {job.path}. Last error: {error}"
                )
                break

            job.status = JobStatus.FAILED_TRANSIENT
            delay = self.backoff(job.attempts)
            logger.warning(
                f"Attempt {job.attempts}/{self.max_retries + 1} failed: {error}. "
                f"Retrying in {delay:.1f}s..."
            )
            if not wait(delay):
                logger.warning(f"Retry abandoned at shutdown: {job.path}")
                break
            job.status = JobStatus.QUEUED

        job.finished_at = self.clock()
        return job
