import threading
import time
from pathlib import Path

import pytest

from conftest import FakeTransformer, leftovers
from domains.normalization.engine import NormalizationService
from domains.normalization.errors import (
    NonZeroExit,
    NormalizerTimeout,
    OutputMissing,
    ProcessSpawnError,
)
from domains.normalization.quiescence import QuiescenceDetector
from domains.normalization.retry import RetryManager
from domains.normalization.suppression import SuppressionSet
from domains.normalization.watcher import PathWatcher
from niwatch.models.schemas import EventKind, FileEvent, JobFailed, JobStatus, JobSucceeded

QUIET = 0.3


def build_service(watch_dir: Path, clock, transformer, max_retries: int = 3):
    events = []
    service = NormalizationService(
        PathWatcher(watch_dir),
        QuiescenceDetector(quiet_interval=QUIET, sample_interval=0.1, clock=clock),
        transformer,
        RetryManager(max_retries=max_retries, initial_delay=0.0),
        SuppressionSet(window=30.0),
        worker_count=4,
        on_event=events.append,
    )
    service.dispatch.start()
    return service, events


@pytest.fixture
def stopper():
    services = []
    yield services.append
    for service in services:
        service.dispatch.shutdown(wait=True, timeout=5)


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


def settle(service, clock, *paths: Path, kind: EventKind = EventKind.CREATED):
    for path in paths:
        service.handle_event(FileEvent(path=path, kind=kind, observed_at=clock()))
    for _ in range(3):
        clock.advance(QUIET / 2)
        service.pump()


def test_nonzero_exit_fails_permanently_and_keeps_original(watch_dir, clock, stopper):
    bad = watch_dir / "bad.jpg"
    bad.write_bytes(b"original bytes")
    transformer = FakeTransformer({"bad.jpg": [NonZeroExit(bad, 3)]})
    service, events = build_service(watch_dir, clock, transformer)
    stopper(service)

    settle(service, clock, bad)
    assert service.dispatch.join(timeout=5)

    assert len(events) == 1
    failed = events[0]
    assert isinstance(failed, JobFailed)
    assert failed.status is JobStatus.FAILED_PERMANENT
    assert failed.attempts == 1
    assert bad.read_bytes() == b"original bytes"
    assert leftovers(watch_dir) == []
    assert transformer.calls == [bad]


def test_two_timeouts_then_success_replaces_original(watch_dir, clock, stopper):
    photo = watch_dir / "photo.jpg"
    photo.write_bytes(b"raw")
    transformer = FakeTransformer({
        "photo.jpg": [NormalizerTimeout(photo, 1), NormalizerTimeout(photo, 1)],
    })
    service, events = build_service(watch_dir, clock, transformer)
    stopper(service)

    settle(service, clock, photo)
    assert service.dispatch.join(timeout=5)

    assert len(events) == 1
    assert isinstance(events[0], JobSucceeded)
    assert events[0].attempts == 3
    assert photo.read_bytes() == b"NORMALIZED:raw"
    assert leftovers(watch_dir) == []


def test_distinct_paths_run_concurrently(watch_dir, clock, stopper):
    a, b = watch_dir / "a.jpg", watch_dir / "b.jpg"
    a.write_bytes(b"A")
    b.write_bytes(b"B")
    gate = threading.Event()
    transformer = FakeTransformer(gate=gate)
    service, events = build_service(watch_dir, clock, transformer)
    stopper(service)

    settle(service, clock, a, b)
    assert set(service.dispatch.active_jobs()) == {a, b}
    threading.Timer(0.3, gate.set).start()
    assert service.dispatch.join(timeout=5)

    assert transformer.max_running == 2
    assert all(isinstance(e, JobSucceeded) for e in events)
    assert a.read_bytes() == b"NORMALIZED:A"
    assert b.read_bytes() == b"NORMALIZED:B"


def test_own_replace_event_does_not_reenter(watch_dir, clock, stopper):
    photo = watch_dir / "photo.jpg"
    photo.write_bytes(b"raw")
    transformer = FakeTransformer()
    service, events = build_service(watch_dir, clock, transformer)
    stopper(service)

    settle(service, clock, photo)
    assert service.dispatch.join(timeout=5)

    # The rename over the original shows up as an event for it
    settle(service, clock, photo, kind=EventKind.RENAMED)

    assert service.dispatch.join(timeout=5)
    assert transformer.calls == [photo]
    assert service.stats()["suppressed"] == 1
    assert len(service.detector) == 0


def test_external_write_after_replace_is_processed(watch_dir, clock, stopper):
    photo = watch_dir / "photo.jpg"
    photo.write_bytes(b"raw")
    transformer = FakeTransformer()
    service, events = build_service(watch_dir, clock, transformer)
    stopper(service)

    settle(service, clock, photo)
    assert service.dispatch.join(timeout=5)

    photo.write_bytes(b"re-saved by a user")
    settle(service, clock, photo, kind=EventKind.MODIFIED)
    assert service.dispatch.join(timeout=5)

    assert transformer.calls == [photo, photo]
    assert photo.read_bytes() == b"NORMALIZED:re-saved by a user"


def test_ready_signal_while_running_triggers_one_rerun(watch_dir, clock, stopper):
    photo = watch_dir / "photo.jpg"
    photo.write_bytes(b"raw")
    gate = threading.Event()
    transformer = FakeTransformer(gate=gate)
    service, events = build_service(watch_dir, clock, transformer)
    stopper(service)

    settle(service, clock, photo)
    assert wait_for(lambda: transformer.running == 1)
    for _ in range(3):
        settle(service, clock, photo, kind=EventKind.MODIFIED)

    assert service.dispatch.pending_reruns() == {photo}
    gate.set()
    assert service.dispatch.join(timeout=5)

    assert len(transformer.calls) == 2
    assert service.stats()["coalesced"] == 3


@pytest.mark.parametrize(
    "error",
    [
        NonZeroExit(Path("x"), 1),
        ProcessSpawnError(Path("x"), "missing"),
        OutputMissing(Path("x"), "nothing"),
        NormalizerTimeout(Path("x"), 1),
    ],
)
def test_original_is_byte_identical_after_any_failure(watch_dir, clock, stopper, error):
    photo = watch_dir / "photo.jpg"
    photo.write_bytes(b"\x00\x01original")
    transformer = FakeTransformer({"photo.jpg": [error] * 10})
    service, events = build_service(watch_dir, clock, transformer, max_retries=1)
    stopper(service)

    settle(service, clock, photo)
    assert service.dispatch.join(timeout=5)

    assert isinstance(events[0], JobFailed)
    assert photo.read_bytes() == b"\x00\x01original"
    assert leftovers(watch_dir) == []


def test_file_removed_before_job_runs(watch_dir, clock, stopper):
    photo = watch_dir / "photo.jpg"
    photo.write_bytes(b"raw")
    transformer = FakeTransformer()
    service, events = build_service(watch_dir, clock, transformer)
    stopper(service)

    service.handle_event(FileEvent(photo, EventKind.CREATED, clock()))
    photo.unlink()
    settle(service, clock)

    assert service.dispatch.active_jobs() == {}
    assert transformer.calls == []
