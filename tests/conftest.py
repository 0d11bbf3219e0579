"""Shared fixtures: isolated git environment and throwaway upstream repositories."""

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

import pytest

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git is not installed"
)


def git(*args: str, cwd: Path, env: dict | None = None) -> str:
    """Runs a git command for test setup and returns its stripped stdout."""
    res = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
        env={**os.environ, **(env or {})},
    )
    return res.stdout.strip()


@dataclass
class Upstream:
    """A bare 'remote' repository plus a seed clone used to push commits to it.

    Attributes:
        bare (Path): The bare repository acting as origin.
        seed (Path): A working clone used to author upstream history.
    """

    bare: Path
    seed: Path

    @property
    def url(self) -> str:
        return str(self.bare)

    def commit(
        self,
        message: str,
        branch: str = "main",
        filename: str = "README.md",
        when: int | None = None,
    ) -> str:
        """Creates a commit on `branch` in the seed and pushes it upstream.

        Returns:
            str: The SHA of the new commit.
        """
        if git("branch", "--show-current", cwd=self.seed) != branch:
            if git("branch", "--list", branch, cwd=self.seed):
                git("checkout", branch, cwd=self.seed)
            else:
                git("checkout", "-b", branch, cwd=self.seed)
        target = self.seed / filename
        with open(target, "a") as f:
            f.write(f"{message}\n")
        git("add", filename, cwd=self.seed)
        env = {}
        if when is not None:
            env = {"GIT_AUTHOR_DATE": f"@{when} +0000", "GIT_COMMITTER_DATE": f"@{when} +0000"}
        git("commit", "-m", message, cwd=self.seed, env=env)
        git("push", "origin", f"HEAD:refs/heads/{branch}", cwd=self.seed)
        return git("rev-parse", "HEAD", cwd=self.seed)

    def head(self, branch: str = "main") -> str:
        return git("rev-parse", f"refs/heads/{branch}", cwd=self.bare)


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolates git from the user's configuration.

    Returns:
        Path: The temporary HOME directory.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Sentry Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "sentry@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Sentry Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "sentry@example.com")
    for var in ("GIT_DIR", "GIT_WORK_TREE", "GIT_INDEX_FILE"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def upstream(tmp_path: Path, git_env: Path) -> Upstream:
    """A bare repository with one commit on `main`."""
    bare = tmp_path / "upstream.git"
    git("init", "--bare", str(bare), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=bare)

    seed = tmp_path / "seed"
    git("clone", str(bare), str(seed), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=seed)

    remote = Upstream(bare=bare, seed=seed)
    remote.commit("initial", when=1_600_000_000)
    return remote
