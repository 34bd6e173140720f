import errno
import os
import stat
from pathlib import Path

import pytest

from conftest import leftovers
from domains.normalization.errors import FilesystemContention, ReplaceError, SourceChanged
from domains.normalization.replace import ReplacePolicy
from domains.normalization.suppression import SuppressionSet
from niwatch.models.schemas import NormalizationResult, fingerprint_of
from niwatch.utils.helpers import staging_dir_path, temp_output_path


def make_result(original: Path, data: bytes = b"normalized", staged: bool = False) -> NormalizationResult:
    staging_dir = None
    if staged:
        staging_dir = staging_dir_path(original)
        staging_dir.mkdir()
        output = staging_dir / original.name
    else:
        output = temp_output_path(original)
    output.write_bytes(data)
    return NormalizationResult(
        input_path=original, output_path=output, exit_code=0, duration_ms=1.0,
        staging_dir=staging_dir,
    )


@pytest.fixture
def suppression() -> SuppressionSet:
    return SuppressionSet(window=5.0)


@pytest.fixture
def policy(suppression) -> ReplacePolicy:
    return ReplacePolicy(suppression)


@pytest.mark.parametrize("staged", [False, True])
def test_apply_replaces_in_place_and_cleans_up(watch_dir, policy, suppression, staged):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")
    expected = fingerprint_of(original)

    policy.apply(original, make_result(original, staged=staged), expected=expected)

    assert original.read_bytes() == b"normalized"
    assert leftovers(watch_dir) == []
    assert original in suppression


def test_suppression_entry_matches_installed_file(watch_dir, policy, suppression):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")

    policy.apply(original, make_result(original))

    assert suppression.match(original) is True


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_apply_keeps_original_permissions(watch_dir, policy):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")
    original.chmod(0o640)

    policy.apply(original, make_result(original))

    assert stat.S_IMODE(original.stat().st_mode) == 0o640


def test_changed_source_is_not_overwritten(watch_dir, policy, suppression):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")
    expected = fingerprint_of(original)
    result = make_result(original)

    original.write_bytes(b"edited by someone else")

    with pytest.raises(SourceChanged):
        policy.apply(original, result, expected=expected)

    assert original.read_bytes() == b"edited by someone else"
    assert leftovers(watch_dir) == []
    assert original not in suppression


def test_rename_failure_leaves_original_untouched(watch_dir, policy, suppression, monkeypatch):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")

    def cross_device(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr("domains.normalization.replace.os.replace", cross_device)

    with pytest.raises(ReplaceError):
        policy.apply(original, make_result(original))

    assert original.read_bytes() == b"raw"
    assert leftovers(watch_dir) == []
    assert original not in suppression


def test_busy_file_is_contention(watch_dir, policy, monkeypatch):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")

    def busy(src, dst):
        raise OSError(errno.EBUSY, "Device or resource busy")

    monkeypatch.setattr("domains.normalization.replace.os.replace", busy)

    with pytest.raises(FilesystemContention):
        policy.apply(original, make_result(original, staged=True))

    assert original.read_bytes() == b"raw"
    assert leftovers(watch_dir) == []


def test_vanished_output_is_replace_error(watch_dir, policy):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")
    result = make_result(original)
    result.output_path.unlink()

    with pytest.raises(ReplaceError):
        policy.apply(original, result)

    assert original.read_bytes() == b"raw"


@pytest.mark.skipif(os.name == "nt", reason="directory fsync is skipped on Windows")
def test_unreadable_directory_does_not_fail_a_finished_swap(watch_dir, policy, suppression, monkeypatch):
    original = watch_dir / "photo.jpg"
    original.write_bytes(b"raw")
    real_open = os.open

    def no_read_on_dir(path, flags, *args, **kwargs):
        if Path(path) == watch_dir:
            raise PermissionError(errno.EACCES, "Permission denied", str(path))
        return real_open(path, flags, *args, **kwargs)

    monkeypatch.setattr("domains.normalization.replace.os.open", no_read_on_dir)

    policy.apply(original, make_result(original), expected=fingerprint_of(original))

    assert original.read_bytes() == b"normalized"
    assert original in suppression
    assert leftovers(watch_dir) == []
