"""
Error taxonomy for the normalization pipeline.

Only ConfigurationError and WatchRootLost stop the service. Job errors are
classified by the retry manager; the transient/permanent split here is the
default classification.
"""

import errno
from pathlib import Path
from typing import Optional


class NormalizerServiceError(Exception):
    """Base class for all service errors."""


class ConfigurationError(NormalizerServiceError):
    """Invalid or unusable startup configuration."""


class WatchRootLost(NormalizerServiceError):
    """The watch root was deleted, unmounted or became unreadable."""

    def __init__(self, root: Path, reason: str):
        super().__init__(f"Watch root lost: {root} ({reason})")
        self.root = root
        self.reason = reason


class JobError(NormalizerServiceError):
    """A single normalization attempt failed."""

    def __init__(self, path: Path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class TransientJobError(JobError):
    """Failure expected to go away on retry."""


class PermanentJobError(JobError):
    """Deterministic failure; retrying will not help."""


class NormalizerTimeout(TransientJobError):
    """The tool exceeded its wall-clock budget and was killed."""

    def __init__(self, path: Path, timeout: float):
        super().__init__(path, f"normalizer timed out after {timeout:.1f}s")
        self.timeout = timeout


class FilesystemContention(TransientJobError):
    """The file was busy or locked by another process."""


class SourceChanged(TransientJobError):
    """The original changed while it was being normalized."""

    def __init__(self, path: Path):
        super().__init__(path, "file changed during normalization")


class ProcessSpawnError(PermanentJobError):
    """The tool could not be started (missing, not executable)."""


class NonZeroExit(PermanentJobError):
    """The tool exited with a nonzero status."""

    def __init__(self, path: Path, exit_code: int, stderr: Optional[str] = None):
        super().__init__(path, f"normalizer exited with code {exit_code}")
        self.exit_code = exit_code
        self.stderr = stderr


class OutputMissing(PermanentJobError):
    """The tool reported success but did not produce exactly one artifact."""


class ReplaceError(PermanentJobError):
    """The normalized output could not be swapped in for the original."""


class SourceMissing(PermanentJobError):
    """The original disappeared before it could be normalized."""


# errno values (and Windows sharing violations) that mean "busy, try later"
CONTENTION_ERRNOS = frozenset(
    code for code in (
        getattr(errno, "EBUSY", None),
        getattr(errno, "EAGAIN", None),
        getattr(errno, "ETXTBSY", None),
        getattr(errno, "EDEADLK", None),
    ) if code is not None
)
CONTENTION_WINERRORS = frozenset({32, 33})


def is_contention(error: OSError) -> bool:
    """True if ``error`` signals a busy or locked file."""
    if getattr(error, "winerror", None) in CONTENTION_WINERRORS:
        return True
    return error.errno in CONTENTION_ERRNOS


def filesystem_error(path: Path, action: str, error: OSError) -> JobError:
    """Wrap an OSError raised while touching ``path`` into a job error."""
    if is_contention(error):
        return FilesystemContention(path, f"{action}: {error}")
    return ReplaceError(path, f"{action}: {error}")
