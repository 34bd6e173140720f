"""
External normalizer invocation.

The tool is a black box: ``<tool> -i <input> -o <output>``, judged only by its
exit status and by the artifact it leaves behind. Output always goes to a
temporary location beside the input, never to the input path itself.
"""

import shutil
import subprocess
import time
from pathlib import Path
from typing import List, Literal, Optional, Protocol, Sequence

from loguru import logger

from domains.normalization.errors import (
    NonZeroExit,
    NormalizerTimeout,
    OutputMissing,
    ProcessSpawnError,
    filesystem_error,
)
from niwatch.models.schemas import NormalizationResult
from niwatch.utils.helpers import staging_dir_path, temp_output_path

# Diagnostic output kept for logging, in characters
_DIAGNOSTIC_LIMIT = 2000


class Transformer(Protocol):
    """Anything that can normalize one file into a temporary output."""

    def run(self, path: Path) -> NormalizationResult:
        ...


def resolve_tool(tool: str) -> Optional[Path]:
    """Locate ``tool`` on PATH or as a literal path."""
    found = shutil.which(tool)
    if found:
        return Path(found)
    candidate = Path(tool).expanduser()
    return candidate if candidate.is_file() else None


def discard_output(result: NormalizationResult):
    """Remove the temporary artifacts of ``result``."""
    result.output_path.unlink(missing_ok=True)
    if result.staging_dir is not None:
        shutil.rmtree(result.staging_dir, ignore_errors=True)


class SubprocessNormalizer:
    """Runs the normalizer CLI as a child process."""

    def __init__(
        self,
        tool: str,
        timeout: float = 120.0,
        output_mode: Literal["directory", "file"] = "directory",
        extra_args: Sequence[str] = (),
    ):
        """
        Args:
            tool: Executable name or path
            timeout: Hard wall-clock limit per invocation, seconds
            output_mode: Pass a staging directory or a temporary file as ``-o``
            extra_args: Arguments placed before ``-i``
        """
        if output_mode not in ("directory", "file"):
            raise ValueError(f"Unknown output mode: {output_mode}")
        self.tool = tool
        self.timeout = timeout
        self.output_mode = output_mode
        self.extra_args = list(extra_args)

    def build_command(self, path: Path, output: Path) -> List[str]:
        return [self.tool, *self.extra_args, "-i", str(path), "-o", str(output)]

    def run(self, path: Path) -> NormalizationResult:
        """
        Normalize ``path`` into a temporary output.

        Raises:
            NormalizerTimeout: Tool killed after the timeout
            ProcessSpawnError: Tool could not be started
            NonZeroExit: Tool reported failure
            OutputMissing: Tool succeeded without exactly one artifact
        """
        staging_dir: Optional[Path] = None
        if self.output_mode == "directory":
            staging_dir = staging_dir_path(path)
            try:
                staging_dir.mkdir()
            except OSError as e:
                raise filesystem_error(path, "create staging directory", e) from e
            target = staging_dir
        else:
            target = temp_output_path(path)

        command = self.build_command(path, target)
        logger.debug(f"Running: {' '.join(command)}")

        started = time.monotonic()
        try:
            completed = self._execute(path, command)
            duration_ms = (time.monotonic() - started) * 1000
            _log_diagnostics(path, completed)

            if completed.returncode != 0:
                raise NonZeroExit(path, completed.returncode, _tail(completed.stderr))

            output = self._locate_output(path, target, staging_dir)
        except BaseException:
            if staging_dir is not None:
                shutil.rmtree(staging_dir, ignore_errors=True)
            else:
                target.unlink(missing_ok=True)
            raise

        logger.debug(f"Normalizer finished in {duration_ms:.0f}ms: {path}")
        return NormalizationResult(
            input_path=path,
            output_path=output,
            exit_code=completed.returncode,
            duration_ms=duration_ms,
            staging_dir=staging_dir,
        )

    def _execute(self, path: Path, command: List[str]) -> subprocess.CompletedProcess:
        try:
            # subprocess.run kills the child before re-raising TimeoutExpired
            return subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise NormalizerTimeout(path, self.timeout) from e
        except OSError as e:
            raise ProcessSpawnError(path, f"cannot start {self.tool}: {e}") from e

    def _locate_output(self, path: Path, target: Path, staging_dir: Optional[Path]) -> Path:
        if staging_dir is None:
            if not target.is_file():
                raise OutputMissing(path, f"no output written to {target}")
            return target

        artifacts = [p for p in staging_dir.iterdir() if p.is_file()]
        if len(artifacts) != 1:
            raise OutputMissing(
                path, f"expected one artifact in {staging_dir}, found {len(artifacts)}"
            )
        return artifacts[0]


def _decode(data) -> str:
    if not data:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _tail(data) -> str:
    return _decode(data).strip()[-_DIAGNOSTIC_LIMIT:]


def _log_diagnostics(path: Path, completed: subprocess.CompletedProcess):
    for stream, data in (("stdout", completed.stdout), ("stderr", completed.stderr)):
        text = _tail(data)
        if text:
            logger.debug(f"Normalizer {stream} for {path.name}: {text}")
