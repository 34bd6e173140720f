"""
Data models for the ni watcher.

Runtime pipeline records are dataclasses; operator-visible events are
pydantic models so they can be logged or serialized as-is.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Literal, NamedTuple, Optional, Union

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =====================================================
# Pipeline Models
# =====================================================

class EventKind(str, Enum):
    """Kind of filesystem change."""
    CREATED = "created"
    MODIFIED = "modified"
    RENAMED = "renamed"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class FileEvent:
    """A single filesystem change observed under the watch root."""

    path: Path
    kind: EventKind
    observed_at: float


class Fingerprint(NamedTuple):
    """Size and modification time of a file at one instant."""
    size: int
    mtime_ns: int


def fingerprint_of(path: Path) -> Fingerprint:
    """Stat ``path``; raises OSError if it is missing or unreadable."""
    st = path.stat()
    return Fingerprint(st.st_size, st.st_mtime_ns)


class PendingState(str, Enum):
    WRITING = "writing"
    SETTLING = "settling"


@dataclass(slots=True)
class PendingFile:
    """Quiescence tracking state for one path."""

    path: Path
    last_seen_size: int
    last_seen_mtime: int
    stable_since: float
    last_sampled: float
    state: PendingState = PendingState.WRITING

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.last_seen_size, self.last_seen_mtime)


class JobStatus(str, Enum):
    """Lifecycle of a normalization job."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_TRANSIENT = "failed-transient"
    FAILED_PERMANENT = "failed-permanent"


@dataclass(slots=True)
class Job:
    """One normalization job; at most one exists per path."""

    path: Path
    attempts: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    status: JobStatus = JobStatus.QUEUED
    last_error: Optional[str] = None
    fingerprint: Optional[Fingerprint] = None

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)

    @property
    def is_terminal(self) -> bool:
        return self.finished_at is not None


@dataclass(slots=True)
class NormalizationResult:
    """Output of one successful tool invocation."""

    input_path: Path
    output_path: Path
    exit_code: int
    duration_ms: float
    staging_dir: Optional[Path] = field(default=None)


# =====================================================
# Operator Event Models
# =====================================================

class RootLost(BaseModel):
    """The watch root disappeared; the service stopped."""
    type: Literal["root_lost"] = "root_lost"
    ts: datetime = Field(default_factory=_utcnow)
    root: str
    reason: str


class JobSucceeded(BaseModel):
    """A file was normalized and replaced."""
    type: Literal["job_succeeded"] = "job_succeeded"
    ts: datetime = Field(default_factory=_utcnow)
    path: str
    attempts: int
    duration_ms: float


class JobFailed(BaseModel):
    """A job ended without replacing the original."""
    type: Literal["job_failed"] = "job_failed"
    ts: datetime = Field(default_factory=_utcnow)
    path: str
    attempts: int
    status: JobStatus
    error: Optional[str] = None


class ConfigurationFailed(BaseModel):
    """Startup configuration was rejected."""
    type: Literal["configuration_failed"] = "configuration_failed"
    ts: datetime = Field(default_factory=_utcnow)
    error: str


PipelineEvent = Union[RootLost, JobSucceeded, JobFailed, ConfigurationFailed]
