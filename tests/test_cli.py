"""Tests for the Command Line Interface (CLI) module."""

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from reposentry import cli
from reposentry.config import Config
from reposentry.errors import EventStoreError
from reposentry.events import EventStore
from reposentry.models import (
    EventType,
    RepositoryDescriptor,
    SyncDecision,
    SyncEvent,
    SyncOutcome,
    SyncReport,
)

ALPHA = RepositoryDescriptor(name="alpha", owner="octo", remote_url="https://x/octo/alpha")


@pytest.fixture
def conf(tmp_path: Path, mocker: MagicMock) -> Config:
    """A config pointing every path into tmp_path, returned by Config.load."""
    config = Config()
    config.sync.base_directory = str(tmp_path / "repos")
    config.events.database = str(tmp_path / "state.db")
    config.repositories = [ALPHA]
    mocker.patch("reposentry.cli.Config.load", return_value=config)
    mocker.patch("reposentry.cli.daemon.setup_logging")
    # Wide console so tables never truncate cell text.
    mocker.patch("reposentry.cli.console", Console(width=200))
    return config


@pytest.fixture
def seeded(conf: Config) -> Any:
    """An event log with one error and one success."""
    with EventStore(conf.events.db_path) as store:
        error_id = store.append(SyncEvent("octo/alpha", EventType.SYNC_ERROR, "boom"))
        store.append(SyncEvent("octo/beta", EventType.PULLED, "ok"))
    return error_id


def test_no_command_prints_help(capsys: pytest.CaptureFixture) -> None:
    """Verifies that running without a subcommand shows grouped help."""
    assert cli.main([]) == 0
    out = capsys.readouterr().out
    assert "Synchronization:" in out
    assert "Event Log:" in out


def test_events_list(conf: Config, seeded: int, capsys: pytest.CaptureFixture) -> None:
    """Verifies that events are rendered in a table."""
    assert cli.main(["events", "list"]) == 0
    out = capsys.readouterr().out
    assert "octo/alpha" in out
    assert "sync_error" in out


def test_events_list_filters_by_type(
    conf: Config, seeded: int, capsys: pytest.CaptureFixture
) -> None:
    """Verifies the --type filter."""
    assert cli.main(["events", "list", "--type", "pulled"]) == 0
    out = capsys.readouterr().out
    assert "octo/beta" in out
    assert "octo/alpha" not in out


def test_events_ack(conf: Config, seeded: int, capsys: pytest.CaptureFixture) -> None:
    """Verifies acknowledging a single event and a missing one."""
    assert cli.main(["events", "ack", str(seeded)]) == 0
    assert cli.main(["events", "ack", str(seeded)]) == 1

    with EventStore(conf.events.db_path) as store:
        assert store.get(seeded).acknowledged


def test_events_status_exit_code(
    conf: Config, seeded: int, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that open warnings or errors produce a non-zero exit code."""
    assert cli.main(["events", "status"]) == 1
    assert cli.main(["events", "ack", "--all"]) == 0
    assert cli.main(["events", "status"]) == 0


def test_events_cleanup(conf: Config, seeded: int, capsys: pytest.CaptureFixture) -> None:
    """Verifies that cleanup reports how many rows were removed."""
    assert cli.main(["events", "cleanup", "--days", "0", "--include-unacked"]) == 0
    assert "Removed 2 event(s)" in capsys.readouterr().out


def test_sync_dry_run(
    conf: Config, mocker: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that --dry-run only plans and prints the decisions."""
    orchestrator = mocker.patch(
        "reposentry.cli.ParallelSyncOrchestrator.from_config"
    ).return_value
    report = SyncReport(dry_run=True, concurrency=1)
    report.add(SyncOutcome(ALPHA, SyncDecision.pull(), EventType.PULLED))
    orchestrator.dry_run.return_value = report

    assert cli.main(["sync", "--dry-run"]) == 0

    orchestrator.run_pass.assert_not_called()
    out = capsys.readouterr().out
    assert "Dry Run" in out
    assert "octo/alpha" in out


def test_sync_failure_exit_code(conf: Config, mocker: MagicMock) -> None:
    """Verifies that a pass with failed repositories exits 1."""
    orchestrator = mocker.patch(
        "reposentry.cli.ParallelSyncOrchestrator.from_config"
    ).return_value
    report = SyncReport(concurrency=1)
    report.add(SyncOutcome(ALPHA, SyncDecision.no_op(), EventType.SYNC_ERROR, "boom"))
    orchestrator.run_pass.return_value = report

    assert cli.main(["sync"]) == 1


def test_config_command(conf: Config, capsys: pytest.CaptureFixture) -> None:
    """Verifies that the effective configuration is printed."""
    assert cli.main(["config"]) == 0
    out = capsys.readouterr().out
    assert "max_parallel" in out
    assert "1 repositories in manifest" in out


def test_daemon_status(conf: Config, mocker: MagicMock, capsys: pytest.CaptureFixture) -> None:
    """Verifies the daemon status panel."""
    mocker.patch("reposentry.cli.daemon.is_daemon_running", return_value=False)

    assert cli.main(["daemon-status"]) == 0
    assert "Stopped" in capsys.readouterr().out


def test_events_stats_shows_success_ratio(
    conf: Config, seeded: int, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that the stats summary includes the share of successful events."""
    assert cli.main(["events", "stats"]) == 0
    assert "50% successful" in capsys.readouterr().out


@pytest.fixture
def healthy(conf: Config, mocker: MagicMock) -> Config:
    """A config whose base directory exists and whose git binary is available."""
    conf.sync.base_dir.mkdir(parents=True)
    mocker.patch("reposentry.cli.shutil.which", return_value="/usr/bin/git")
    mocker.patch("reposentry.cli.run_git", return_value="git version 2.45.0")
    return conf


def test_doctor_all_checks_pass(healthy: Config, capsys: pytest.CaptureFixture) -> None:
    """Verifies a clean bill of health and a zero exit code."""
    assert cli.main(["doctor"]) == 0
    out = capsys.readouterr().out
    assert "git version 2.45.0" in out
    assert "All required checks passed" in out


def test_doctor_missing_git(
    healthy: Config, mocker: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that a missing git binary fails the preflight."""
    mocker.patch("reposentry.cli.shutil.which", return_value=None)

    assert cli.main(["doctor"]) == 1
    assert "git not found" in capsys.readouterr().out


def test_doctor_missing_base_dir(
    conf: Config, mocker: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that an absent base directory fails with a hint."""
    mocker.patch("reposentry.cli.shutil.which", return_value="/usr/bin/git")
    mocker.patch("reposentry.cli.run_git", return_value="git version 2.45.0")

    assert cli.main(["doctor"]) == 1
    assert "does not exist" in capsys.readouterr().out


def test_doctor_reports_interrupted_passes(
    healthy: Config, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that passes left running by a crash are surfaced as a warning."""
    with EventStore(healthy.events.db_path) as store:
        store.begin_pass(3)

    assert cli.main(["doctor"]) == 0
    assert "1 pass(es) were interrupted" in capsys.readouterr().out


def test_doctor_unusable_event_store(
    healthy: Config, mocker: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that an event store that cannot open fails the preflight."""
    mocker.patch.object(
        EventStore, "count_passes", side_effect=EventStoreError("database is locked")
    )

    assert cli.main(["doctor"]) == 1
    assert "database is locked" in capsys.readouterr().out


def test_help_lists_doctor(capsys: pytest.CaptureFixture) -> None:
    cli.main([])
    assert "doctor" in capsys.readouterr().out
