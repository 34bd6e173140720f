import sys
import textwrap
import threading
from pathlib import Path

import pytest

# Add project root to path to allow absolute imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from niwatch.models.schemas import NormalizationResult
from niwatch.utils.helpers import temp_output_path

FAKE_NI = textwrap.dedent(
    """
    import os
    import sys
    import time
    from pathlib import Path

    args = sys.argv[1:]
    src = Path(args[args.index("-i") + 1])
    out = Path(args[args.index("-o") + 1])

    if "bad" in src.name:
        sys.stderr.write("invalid image\\n")
        sys.exit(3)
    if "slow" in src.name:
        time.sleep(float(os.environ.get("FAKE_NI_SLEEP", "5")))
    if "empty" in src.name:
        sys.exit(0)

    target = out / src.name if out.is_dir() else out
    target.write_bytes(b"NORMALIZED:" + src.read_bytes())
    """
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTransformer:
    """In-process stand-in for the normalizer.

    ``plan`` maps a file name to a list of outcomes consumed per call; an
    outcome is an exception instance to raise or ``None`` for success.
    """

    def __init__(self, plan=None, gate: threading.Event = None):
        self.plan = {name: list(outcomes) for name, outcomes in (plan or {}).items()}
        self.calls: list[Path] = []
        self.gate = gate
        self.lock = threading.Lock()
        self.running = 0
        self.max_running = 0

    def run(self, path: Path) -> NormalizationResult:
        with self.lock:
            self.calls.append(path)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            outcomes = self.plan.get(path.name)
            outcome = outcomes.pop(0) if outcomes else None
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if outcome is not None:
                raise outcome
            output = temp_output_path(path)
            output.write_bytes(b"NORMALIZED:" + path.read_bytes())
            return NormalizationResult(
                input_path=path, output_path=output, exit_code=0, duration_ms=1.0,
            )
        finally:
            with self.lock:
                self.running -= 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_ni(tmp_path_factory) -> Path:
    """Path to a Python script that behaves like the ni CLI."""
    script = tmp_path_factory.mktemp("tool") / "fake_ni.py"
    script.write_text(FAKE_NI)
    return script


@pytest.fixture
def watch_dir(tmp_path) -> Path:
    root = tmp_path / "watch"
    root.mkdir()
    return root.resolve()


def leftovers(directory: Path) -> list[str]:
    """Names of temporary artifacts left in ``directory``."""
    return sorted(p.name for p in directory.iterdir() if ".ni-" in p.name)
