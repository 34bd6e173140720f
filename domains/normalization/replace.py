"""
Atomic substitution of normalized output for the original file.

The output is written beside the original, fsynced, then renamed over it, so
the original path always holds either the old bytes or the complete new ones.
"""

import os
import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from domains.normalization.errors import (
    ReplaceError,
    SourceChanged,
    filesystem_error,
)
from domains.normalization.invoker import discard_output
from domains.normalization.suppression import SuppressionSet
from niwatch.models.schemas import Fingerprint, NormalizationResult, fingerprint_of
from niwatch.utils.helpers import format_bytes


def _fsync_file(path: Path):
    with open(path, "rb+") as fh:
        os.fsync(fh.fileno())


def _fsync_dir(path: Path):
    # Directories cannot be opened for fsync on Windows
    if os.name == "nt":
        return
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError as e:
        logger.debug(f"Cannot open directory for fsync {path}: {e}")
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"Directory fsync not supported for {path}: {e}")
    finally:
        os.close(fd)


class ReplacePolicy:
    """Swaps a NormalizationResult into place and suppresses the echo."""

    def __init__(self, suppression: SuppressionSet):
        self.suppression = suppression

    def apply(
        self,
        original: Path,
        result: NormalizationResult,
        expected: Optional[Fingerprint] = None,
    ):
        """
        Replace ``original`` with ``result.output_path``.

        Args:
            original: File being normalized
            result: Successful tool output
            expected: Fingerprint of the original when the attempt started;
                a mismatch means someone wrote to it in the meantime

        Raises:
            SourceChanged: The original changed during normalization
            FilesystemContention: The file was busy
            ReplaceError: Any other failure; the original is untouched
        """
        output = result.output_path
        suppressed = False
        try:
            if expected is not None and self._current(original) != expected:
                raise SourceChanged(original)

            if not output.is_file():
                raise ReplaceError(original, f"normalized output vanished: {output}")

            try:
                _fsync_file(output)
                shutil.copymode(original, output)
                installed = fingerprint_of(output)
            except OSError as e:
                raise filesystem_error(original, "prepare output", e) from e

            self.suppression.add(original, installed)
            suppressed = True

            try:
                os.replace(output, original)
            except OSError as e:
                raise filesystem_error(original, "rename over original", e) from e

        except BaseException:
            if suppressed:
                self.suppression.discard(original)
            discard_output(result)
            raise

        _fsync_dir(original.parent)
        if result.staging_dir is not None:
            shutil.rmtree(result.staging_dir, ignore_errors=True)

        logger.info(f"Replaced {original} ({format_bytes(installed.size)})")

    def _current(self, original: Path) -> Optional[Fingerprint]:
        try:
            return fingerprint_of(original)
        except OSError:
            return None
