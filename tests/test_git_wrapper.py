import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from reposentry.errors import GitCommandError, GitTimeoutError, StateDetectionError
from reposentry.git_wrapper import GitRepo, normalize_remote_url, remote_urls_match
from reposentry.models import RemoteBranch


@pytest.fixture
def repo(tmp_path: Path) -> GitRepo:
    """A GitRepo over a fake .git directory."""
    (tmp_path / ".git").mkdir()
    return GitRepo(tmp_path, timeout=5)


def test_requires_git_directory(tmp_path: Path) -> None:
    """Verifies that a plain directory is rejected."""
    with pytest.raises(StateDetectionError):
        GitRepo(tmp_path)


def test_run_maps_non_zero_exit(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that a failing command raises GitCommandError with stderr kept."""
    mocker.patch(
        "subprocess.run",
        side_effect=subprocess.CalledProcessError(
            128, ["git", "fetch"], stderr="fatal: could not read from remote\n"
        ),
    )

    with pytest.raises(GitCommandError) as exc_info:
        repo.fetch()

    assert exc_info.value.returncode == 128
    assert exc_info.value.stderr == "fatal: could not read from remote"
    assert "could not read from remote" in str(exc_info.value)


def test_run_maps_timeout(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that an expired timeout raises a TimeoutError subclass."""
    mocker.patch(
        "subprocess.run", side_effect=subprocess.TimeoutExpired(["git", "fetch"], 5)
    )

    with pytest.raises(GitTimeoutError) as exc_info:
        repo.fetch()

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.timeout == 5


def test_network_commands_disable_prompts(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that fetch runs with terminal prompts disabled and the timeout set."""
    mock_run = mocker.patch("subprocess.run")
    mock_run.return_value.stdout = ""

    repo.fetch(prune=True)

    args, kwargs = mock_run.call_args
    assert args[0] == ["git", "fetch", "origin", "--prune"]
    assert kwargs["env"]["GIT_TERMINAL_PROMPT"] == "0"
    assert kwargs["timeout"] == 5
    assert kwargs["cwd"] == repo.path


def test_pull_arguments(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies fast-forward and merge pulls build the right command lines."""
    mock_run = mocker.patch.object(repo, "_run")

    repo.pull("main")
    mock_run.assert_called_with(
        ["pull", "--ff-only", "origin", "main"], capture=False, network=True
    )

    repo.pull("main", ff_only=False)
    mock_run.assert_called_with(
        ["pull", "--no-rebase", "--no-edit", "origin", "main"],
        capture=False,
        network=True,
    )


def test_ahead_behind_parsing(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies parsing of `rev-list --left-right --count`."""
    mock_run = mocker.patch.object(repo, "_run", return_value="2\t1")

    assert repo.ahead_behind("origin/main") == (2, 1)
    mock_run.assert_called_with(
        ["rev-list", "--left-right", "--count", "HEAD...origin/main"]
    )


def test_remote_branches_skip_head(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that remote branches are listed without prefix and without HEAD."""
    mocker.patch.object(
        repo,
        "_run",
        return_value=(
            "refs/remotes/origin/HEAD\t1700000300\n"
            "refs/remotes/origin/dependabot/npm/x\t1700000200\n"
            "refs/remotes/origin/main\t1700000100"
        ),
    )

    assert repo.remote_branches() == [
        RemoteBranch("dependabot/npm/x", 1700000200),
        RemoteBranch("main", 1700000100),
    ]


def test_checkout_branch_creates_tracking_branch(
    mocker: MagicMock, repo: GitRepo
) -> None:
    """Verifies that a branch only present on the remote is created with tracking."""
    mocker.patch.object(repo, "rev_parse", return_value=None)
    mock_run = mocker.patch.object(repo, "_run")

    repo.checkout_branch("feature")

    mock_run.assert_called_once_with(
        ["checkout", "-b", "feature", "--track", "origin/feature"], capture=False
    )


def test_stash_push_is_verified(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that a stash only counts when refs/stash actually moved."""
    mocker.patch.object(repo, "_run")

    mocker.patch.object(repo, "rev_parse", side_effect=[None, "abc123"])
    assert repo.stash_push("msg") is True

    mocker.patch.object(repo, "rev_parse", side_effect=["abc123", "abc123"])
    assert repo.stash_push("msg") is False


def test_in_progress_operation_detects_markers(repo: GitRepo) -> None:
    """Verifies detection of an interrupted rebase."""
    assert repo.in_progress_operation() is None
    (repo.path / ".git" / "rebase-merge").mkdir()
    assert repo.in_progress_operation() == "rebase-merge"


def test_last_commit_timestamp_empty_repo(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that a repository without commits yields None."""
    mocker.patch.object(
        repo, "_run", side_effect=GitCommandError(["git", "log"], 128, "no commits")
    )
    assert repo.last_commit_timestamp() is None


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("git@github.com:Octo/Alpha.git", "https://github.com/octo/alpha"),
        ("ssh://git@github.com:22/octo/alpha.git", "https://github.com/octo/alpha.git"),
        ("https://github.com/octo/alpha/", "https://github.com/octo/alpha.git"),
        ("/srv/git/alpha.git", "/srv/git/alpha"),
    ],
)
def test_remote_urls_match(left: str, right: str) -> None:
    """Verifies that equivalent URL spellings compare equal."""
    assert remote_urls_match(left, right)


def test_remote_urls_differ() -> None:
    """Verifies that different repositories do not match."""
    assert not remote_urls_match(
        "git@github.com:octo/alpha.git", "git@github.com:octo/beta.git"
    )
    assert normalize_remote_url("git@gitlab.com:octo/alpha") == "gitlab.com/octo/alpha"
