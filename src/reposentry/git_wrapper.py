import logging
import os
import re
import subprocess
from pathlib import Path

from .constants import APP_NAME, DEFAULT_REMOTE, GIT_LOCK_FILES
from .errors import GitCommandError, GitTimeoutError, StateDetectionError
from .models import RemoteBranch

logger = logging.getLogger(APP_NAME)

NETWORK_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_SSH_COMMAND": "ssh -o BatchMode=yes",
}
"""Environment overrides for commands that talk to a remote: never prompt."""


def run_git(
    args: list[str],
    cwd: Path | None = None,
    capture: bool = True,
    env: dict | None = None,
    timeout: float | None = None,
) -> str:
    """Executes a git command and maps failures onto the error taxonomy.

    Args:
        args (list[str]): Arguments passed after `git`.
        cwd (Path | None): Working directory for the command.
        capture (bool): Whether to capture and return stdout.
        env (dict | None): Extra environment variables merged over os.environ.
        timeout (float | None): Wall-clock limit in seconds. The child is
            killed when it expires.

    Returns:
        str: The stripped stdout if capture is True, otherwise an empty string.

    Raises:
        GitCommandError: If git exits non-zero.
        GitTimeoutError: If the timeout expires.
    """
    cmd = ["git", *args]
    full_env = {**os.environ, **env} if env else None
    try:
        res = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env=full_env,
            timeout=timeout,
        )
        return res.stdout.strip() if capture else ""
    except subprocess.CalledProcessError as e:
        raise GitCommandError(cmd, e.returncode, e.stderr) from e
    except subprocess.TimeoutExpired as e:
        raise GitTimeoutError(cmd, timeout or 0) from e


def normalize_remote_url(url: str) -> str:
    """Reduces a remote URL to a comparable form.

    `git@host:owner/repo.git`, `ssh://git@host/owner/repo` and
    `https://host/owner/repo.git` all normalise to `host/owner/repo`.
    """
    url = url.strip().lower().rstrip("/")
    url = url.removesuffix(".git")
    url = re.sub(r"^[a-z+]+://", "", url)
    url = re.sub(r"^[^@/]+@", "", url)
    # scp-like syntax: host:path
    url = re.sub(r"^([^/:]+):(?!\d+/)", r"\1/", url)
    url = re.sub(r"^([^/:]+):\d+/", r"\1/", url)
    return url


def remote_urls_match(left: str, right: str) -> bool:
    return normalize_remote_url(left) == normalize_remote_url(right)


class GitRepo:
    """A wrapper around the Git command-line interface for a specific checkout.

    Every command runs with the timeout given at construction. Commands that
    contact the remote run with prompts disabled so an authentication problem
    fails fast instead of hanging a worker.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float | None): Per-operation wall-clock limit in seconds.
        remote (str): The remote compared against and pulled from.
    """

    def __init__(
        self, path: Path, timeout: float | None = None, remote: str = DEFAULT_REMOTE
    ):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            timeout (float | None): Per-operation timeout in seconds.
            remote (str): The remote name. Defaults to 'origin'.

        Raises:
            StateDetectionError: If the specified path does not contain a .git entry.
        """
        self.path = path
        self.timeout = timeout
        self.remote = remote
        if not (self.path / ".git").exists():
            raise StateDetectionError(f"Not a git repository: {self.path}")

    @classmethod
    def clone(
        cls,
        url: str,
        target: Path,
        timeout: float | None = None,
        remote: str = DEFAULT_REMOTE,
    ) -> "GitRepo":
        """Clones `url` into `target` and returns a wrapper for the new checkout.

        Args:
            url (str): The remote URL.
            target (Path): The directory to clone into. Must be absent or empty.
            timeout (float | None): Wall-clock limit for the clone.
            remote (str): The remote name to create.

        Returns:
            GitRepo: The new checkout.
        """
        run_git(
            ["clone", "--origin", remote, url, str(target)],
            env=NETWORK_ENV,
            timeout=timeout,
        )
        return cls(target, timeout=timeout, remote=remote)

    def _run(
        self,
        args: list[str],
        capture: bool = True,
        env: dict | None = None,
        network: bool = False,
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional): Whether to capture and return stdout.
                Defaults to True.
            env (dict | None, optional): Extra environment variables.
            network (bool, optional): Whether the command contacts the remote.

        Returns:
            str: The stripped stdout of the command if capture is True,
                otherwise an empty string.

        Raises:
            GitCommandError: If the git command returns a non-zero exit code.
            GitTimeoutError: If the command exceeds the configured timeout.
        """
        if network:
            env = {**NETWORK_ENV, **(env or {})}
        return run_git(args, cwd=self.path, capture=capture, env=env, timeout=self.timeout)

    @property
    def git_dir(self) -> Path:
        """The metadata directory, following `gitdir:` files of linked worktrees."""
        dot_git = self.path / ".git"
        if dot_git.is_file():
            content = dot_git.read_text().strip()
            if content.startswith("gitdir:"):
                target = Path(content.split(":", 1)[1].strip())
                return target if target.is_absolute() else (self.path / target)
        return dot_git

    def current_branch(self) -> str | None:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str | None: The branch name, or None on a detached HEAD.
        """
        return self._run(["branch", "--show-current"]) or None

    def status_porcelain(self) -> list[str]:
        """Returns the porcelain status, untracked files included.

        Returns:
            list[str]: A list of status lines returned by `git status --porcelain`.
        """
        output = self._run(["status", "--porcelain", "--untracked-files=normal"])
        return output.splitlines() if output else []

    def unmerged_paths(self) -> list[str]:
        """Lists paths with unresolved merge conflicts."""
        output = self._run(["diff", "--name-only", "--diff-filter=U"])
        return output.splitlines() if output else []

    def in_progress_operation(self) -> str | None:
        """Returns the marker of an interrupted merge/rebase/cherry-pick, if any."""
        git_dir = self.git_dir
        for marker in GIT_LOCK_FILES:
            if (git_dir / marker).exists():
                return marker
        return None

    def upstream(self) -> str | None:
        """Resolves the configured upstream of HEAD (e.g. 'origin/main')."""
        try:
            return self._run(
                ["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"]
            ) or None
        except GitCommandError:
            return None

    def ahead_behind(self, tracking: str) -> tuple[int, int]:
        """Counts commits on each side of HEAD...tracking.

        Args:
            tracking (str): The remote-tracking ref (e.g. 'origin/main').

        Returns:
            tuple[int, int]: (ahead, behind).
        """
        output = self._run(["rev-list", "--left-right", "--count", f"HEAD...{tracking}"])
        ahead, behind = output.split()
        return int(ahead), int(behind)

    def fetch(self, prune: bool = True) -> None:
        cmd = ["fetch", self.remote]
        if prune:
            cmd.append("--prune")
        self._run(cmd, capture=False, network=True)

    def pull(self, branch: str | None = None, ff_only: bool = True) -> None:
        """Pulls from the remote.

        Args:
            branch (str | None): The remote branch to pull. Defaults to the upstream.
            ff_only (bool): Refuse anything but a fast-forward. When False a
                merge commit may be created (never a rebase).
        """
        cmd = ["pull"]
        cmd.extend(["--ff-only"] if ff_only else ["--no-rebase", "--no-edit"])
        cmd.append(self.remote)
        if branch:
            cmd.append(branch)
        self._run(cmd, capture=False, network=True)

    def checkout_branch(self, branch: str) -> None:
        """Switches to `branch`, creating a tracking branch from the remote if needed."""
        if self.rev_parse(f"refs/heads/{branch}"):
            self._run(["checkout", branch], capture=False)
        else:
            self._run(
                ["checkout", "-b", branch, "--track", f"{self.remote}/{branch}"],
                capture=False,
            )

    def remote_branches(self) -> list[RemoteBranch]:
        """Lists remote-tracking branches with their latest commit time.

        Returns:
            list[RemoteBranch]: Branch names without the remote prefix, HEAD excluded.
        """
        prefix = f"refs/remotes/{self.remote}/"
        output = self._run(
            [
                "for-each-ref",
                "--sort=-committerdate",
                "--format=%(refname)%09%(committerdate:unix)",
                prefix,
            ]
        )
        branches = []
        for line in output.splitlines():
            ref, _, stamp = line.partition("\t")
            name = ref.removeprefix(prefix)
            if name == "HEAD" or not stamp:
                continue
            branches.append(RemoteBranch(name=name, committed_at=int(stamp)))
        return branches

    def last_commit_timestamp(self) -> int | None:
        """Returns the committer timestamp of HEAD, or None for an empty repository."""
        try:
            output = self._run(["log", "-1", "--format=%ct"])
        except GitCommandError as e:
            logger.debug(f"No commits in {self.path}: {e}")
            return None
        return int(output) if output else None

    def remote_url(self) -> str | None:
        try:
            return self._run(["remote", "get-url", self.remote]) or None
        except GitCommandError:
            return None

    def stash_push(self, message: str) -> bool:
        """Stashes local changes, untracked files included.

        Returns:
            bool: True only if a new stash entry was verifiably created.
        """
        before = self.rev_parse("refs/stash")
        self._run(["stash", "push", "--include-untracked", "-m", message], capture=False)
        after = self.rev_parse("refs/stash")
        return after is not None and after != before

    def stash_pop(self) -> None:
        self._run(["stash", "pop"], capture=False)

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'origin/main').

        Returns:
            str | None: The full SHA-1 hash, or None if the revision could not
                be resolved.
        """
        try:
            return self._run(["rev-parse", "-q", "--verify", rev]) or None
        except GitCommandError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None
