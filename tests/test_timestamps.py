import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from reposentry.errors import StateDetectionError
from reposentry.timestamps import TimestampPreserver, is_valid_timestamp


@pytest.fixture
def checkout(tmp_path: Path) -> Path:
    path = tmp_path / "alpha"
    (path / ".git").mkdir(parents=True)
    os.utime(path, (1_650_000_000, 1_650_000_000))
    return path


def test_sets_mtime_to_last_commit(checkout: Path, mocker: MagicMock) -> None:
    """Verifies the directory mtime matches the latest commit time."""
    repo = mocker.patch("reposentry.timestamps.GitRepo").return_value
    repo.last_commit_timestamp.return_value = 1_600_000_000

    assert TimestampPreserver().preserve(checkout) is True
    assert checkout.stat().st_mtime == 1_600_000_000


@pytest.mark.parametrize("timestamp", [0, 1_000_000_000, 2_600_000_000, None])
def test_out_of_range_leaves_mtime(
    checkout: Path, mocker: MagicMock, timestamp: int | None
) -> None:
    """Verifies that garbage or missing commit times leave the mtime untouched."""
    repo = mocker.patch("reposentry.timestamps.GitRepo").return_value
    repo.last_commit_timestamp.return_value = timestamp

    assert TimestampPreserver().preserve(checkout) is False
    assert checkout.stat().st_mtime == 1_650_000_000


def test_failure_is_only_a_warning(
    checkout: Path, mocker: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that an unreadable checkout does not raise."""
    mocker.patch(
        "reposentry.timestamps.GitRepo", side_effect=StateDetectionError("gone")
    )

    assert TimestampPreserver().preserve(checkout) is False
    assert "Cannot read last commit time" in caplog.text


def test_utime_failure_is_only_a_warning(
    checkout: Path, mocker: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that a read-only filesystem degrades to a warning."""
    repo = mocker.patch("reposentry.timestamps.GitRepo").return_value
    repo.last_commit_timestamp.return_value = 1_600_000_000
    mocker.patch("reposentry.timestamps.os.utime", side_effect=PermissionError("ro"))

    assert TimestampPreserver().preserve(checkout) is False
    assert "Cannot set mtime" in caplog.text


def test_valid_range_bounds() -> None:
    """Verifies the inclusive 2005..2050 window."""
    assert is_valid_timestamp(1104537600)
    assert is_valid_timestamp(2524608000)
    assert not is_valid_timestamp(1104537599)
    assert not is_valid_timestamp(2524608001)
