import logging
from pathlib import Path

from .constants import APP_NAME, DEFAULT_REMOTE
from .errors import GitCommandError, StateDetectionError
from .git_wrapper import GitRepo
from .models import RepositoryAnalysis, RepositoryCheckout, RepositoryState

logger = logging.getLogger(APP_NAME)


def classify(
    dirty: bool, conflicted: bool, ahead: int, behind: int
) -> RepositoryState:
    """Maps raw observations of an existing checkout to a RepositoryState.

    Conflicts dominate local changes, and local changes dominate the
    ahead/behind relationship.
    """
    if conflicted:
        return RepositoryState.CONFLICTED
    if dirty:
        return RepositoryState.DIRTY
    if ahead and behind:
        return RepositoryState.DIVERGED
    if behind:
        return RepositoryState.BEHIND_ONLY
    if ahead:
        return RepositoryState.AHEAD_ONLY
    return RepositoryState.CLEAN


class RepositoryStateAnalyzer:
    """Derives the RepositoryState of a local checkout.

    The analyzer never modifies the working tree. With `refresh` enabled it
    fetches from the remote first, which only updates remote-tracking refs.

    Attributes:
        timeout (float | None): Per git-operation timeout in seconds.
        remote (str): The remote to compare against.
        prune (bool): Whether fetches prune deleted remote branches.
    """

    def __init__(
        self,
        timeout: float | None = None,
        remote: str = DEFAULT_REMOTE,
        prune: bool = True,
    ):
        self.timeout = timeout
        self.remote = remote
        self.prune = prune

    def open(self, path: Path) -> GitRepo:
        return GitRepo(path, timeout=self.timeout, remote=self.remote)

    def analyze(
        self, path: Path, tracking: str | None = None, refresh: bool = True
    ) -> RepositoryAnalysis:
        """Inspects a checkout and classifies it.

        Args:
            path (Path): The checkout directory.
            tracking (str | None): The remote-tracking ref to compare against.
                Resolved from the upstream configuration when omitted.
            refresh (bool): Fetch from the remote before counting.

        Returns:
            RepositoryAnalysis: The checkout, its state and the raw counts.

        Raises:
            StateDetectionError: If the directory exists, is not empty and
                holds no readable git metadata.
            GitTimeoutError: If a git operation exceeds the timeout.
        """
        try:
            missing = not path.exists() or (path.is_dir() and not any(path.iterdir()))
        except OSError as e:
            raise StateDetectionError(f"Cannot read checkout path {path}: {e}") from e
        if missing:
            return RepositoryAnalysis(
                checkout=RepositoryCheckout(path=path, exists=False),
                state=RepositoryState.MISSING,
            )
        if not path.is_dir():
            raise StateDetectionError(f"Checkout path is not a directory: {path}")

        repo = self.open(path)
        try:
            current = repo.current_branch()
            if refresh:
                try:
                    repo.fetch(prune=self.prune)
                except GitCommandError as e:
                    logger.warning(
                        f"Fetch failed for {path}, using last known remote refs: {e}"
                    )

            marker = repo.in_progress_operation()
            conflicted = marker is not None or bool(repo.unmerged_paths())
            changes = repo.status_porcelain()
            tracking = tracking or self.resolve_tracking(repo, current)
            ahead, behind = repo.ahead_behind(tracking) if tracking else (0, 0)
        except GitCommandError as e:
            raise StateDetectionError(f"Cannot read git state of {path}: {e}") from e

        state = classify(bool(changes), conflicted, ahead, behind)
        logger.debug(
            f"{path}: {state.value} (ahead={ahead}, behind={behind}, changes={len(changes)})"
        )
        return RepositoryAnalysis(
            checkout=RepositoryCheckout(
                path=path, exists=True, current_branch=current, tracking_branch=tracking
            ),
            state=state,
            ahead=ahead,
            behind=behind,
            changed_paths=len(changes),
        )

    def resolve_tracking(self, repo: GitRepo, current: str | None) -> str | None:
        """Finds the ref HEAD should be compared against.

        Uses the configured upstream, else `<remote>/<current branch>` when
        that ref exists. Returns None on a detached HEAD without upstream.
        """
        upstream = repo.upstream()
        if upstream:
            return upstream
        if current:
            candidate = f"{self.remote}/{current}"
            if repo.rev_parse(f"refs/remotes/{candidate}"):
                return candidate
        return None
