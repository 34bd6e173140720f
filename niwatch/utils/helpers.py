"""
Helper utilities for the ni watcher.

Path filtering and temporary artifact naming shared by the pipeline.
"""

import fnmatch
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

# Marker carried by every temporary output this service writes
TEMP_MARKER = ".ni-tmp"
STAGING_PREFIX = ".ni-staging-"

DEFAULT_EXCLUDE_PATTERNS = [
    '*.swp',
    '*.part',
    '*.crdownload',
    '~$*',
    '.DS_Store',
    'Thumbs.db',
    'desktop.ini',
]


def generate_token() -> str:
    """Generate a short unique token for temporary names."""
    return uuid4().hex[:12]


def temp_output_path(original: Path) -> Path:
    """Temporary output file beside ``original``, keeping its suffix."""
    return original.with_name(f".{original.stem}.{generate_token()}{TEMP_MARKER}{original.suffix}")


def staging_dir_path(original: Path) -> Path:
    """Private staging directory beside ``original``."""
    return original.parent / f"{STAGING_PREFIX}{generate_token()}"


def is_temp_artifact(path: Path) -> bool:
    """Check if path is, or lives inside, a temporary artifact of ours."""
    return any(
        TEMP_MARKER in part or part.startswith(STAGING_PREFIX)
        for part in path.parts
    )


def normalise_path(path: Path) -> Path:
    """Return a resolved version of ``path`` without forcing existence."""
    try:
        return path.expanduser().resolve()
    except (FileNotFoundError, RuntimeError):
        return path.expanduser().absolute()


def should_exclude_path(path: Path, exclude_patterns: Optional[List[str]] = None) -> bool:
    """
    Check if path should be excluded based on patterns.

    Args:
        path: Path to check
        exclude_patterns: Extra glob patterns to exclude, on top of the defaults

    Returns:
        True if should exclude, False otherwise
    """
    if is_temp_artifact(path):
        return True

    patterns = DEFAULT_EXCLUDE_PATTERNS + list(exclude_patterns or [])

    for pattern in patterns:
        if fnmatch.fnmatch(path.name, pattern) or path.match(pattern):
            return True

    return False


def matches_include(path: Path, include_patterns: Optional[List[str]] = None) -> bool:
    """True if no include patterns are set or the file name matches one."""
    if not include_patterns:
        return True
    name = path.name.lower()
    return any(fnmatch.fnmatch(name, pattern.lower()) for pattern in include_patterns)


def format_bytes(bytes_count: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024.0:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024.0
    return f"{bytes_count:.1f} PB"
