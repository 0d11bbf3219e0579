import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .analyzer import RepositoryStateAnalyzer
from .branches import BranchSelector
from .cancellation import CancellationToken
from .config import Config
from .constants import APP_NAME, DEFAULT_REMOTE, STASH_MESSAGE
from .errors import (
    FilesystemError,
    GitCommandError,
    GitTimeoutError,
    StateDetectionError,
)
from .git_wrapper import GitRepo, remote_urls_match
from .models import (
    BranchPolicy,
    BranchSelection,
    BranchStrategy,
    DecisionKind,
    EventType,
    RepositoryAnalysis,
    RepositoryDescriptor,
    RepositoryState,
    SkipReason,
    SyncDecision,
    SyncOutcome,
)
from .timestamps import TimestampPreserver

logger = logging.getLogger(APP_NAME)

SKIP_EVENTS = {
    SkipReason.DIRTY_WORKING_TREE: EventType.SKIPPED_DIRTY,
    SkipReason.CONFLICTED_STATE: EventType.SKIPPED_CONFLICT,
    SkipReason.DIVERGED: EventType.SKIPPED_CONFLICT,
    SkipReason.EXCLUDED_BRANCH: EventType.SKIPPED_EXCLUDED_BRANCH,
    SkipReason.TIMEOUT: EventType.SYNC_ERROR,
    SkipReason.ERROR: EventType.SYNC_ERROR,
    SkipReason.CANCELLED: EventType.SYNC_ERROR,
}
"""dict: The event recorded for each skip reason."""


def event_for(decision: SyncDecision, state: RepositoryState) -> EventType:
    """The event a decision produces when it runs without error."""
    if decision.kind is DecisionKind.SKIP:
        return SKIP_EVENTS[decision.reason]
    if decision.kind is DecisionKind.NO_OP:
        if state is RepositoryState.AHEAD_ONLY:
            return EventType.SKIPPED_AHEAD
        return EventType.UP_TO_DATE
    return {
        DecisionKind.CLONE: EventType.CLONED,
        DecisionKind.PULL: EventType.PULLED,
        DecisionKind.FETCH_ONLY: EventType.FETCHED_ONLY,
        DecisionKind.SWITCH_BRANCH: EventType.BRANCH_SWITCH,
    }[decision.kind]


@dataclass(frozen=True)
class SyncPlan:
    """Everything known about a repository before acting on it.

    Attributes:
        descriptor (RepositoryDescriptor): The repository.
        path (Path): Its checkout directory.
        analysis (RepositoryAnalysis): The derived state.
        selection (BranchSelection | None): The branch choice, if computed.
        decision (SyncDecision): The single action to take.
        fetched (bool): Whether remote refs were refreshed while planning.
    """

    descriptor: RepositoryDescriptor
    path: Path
    analysis: RepositoryAnalysis
    selection: BranchSelection | None
    decision: SyncDecision
    fetched: bool = False

    @property
    def expected_event(self) -> EventType:
        return event_for(self.decision, self.analysis.state)


class SafePuller:
    """Decides and executes the one safe action for each repository.

    `decide` is a pure function of the analysis; `plan` gathers what it
    needs without touching the working tree; `apply` runs exactly one
    decision; `sync` chains them and is what the orchestrator's workers
    call. No path through this class discards uncommitted changes.
    """

    def __init__(
        self,
        base_dir: Path,
        fast_forward_only: bool = True,
        auto_stash: bool = False,
        merge_on_diverge: bool = False,
        branch_policy: BranchPolicy | None = None,
        timeout: float | None = None,
        preserve_timestamps: bool = True,
        cleanup_on_error: bool = True,
        separate_org_dirs: bool = True,
        verify_remote_url: bool = True,
        prune: bool = True,
        remote: str = DEFAULT_REMOTE,
    ):
        self.base_dir = base_dir
        self.fast_forward_only = fast_forward_only
        self.auto_stash = auto_stash
        self.merge_on_diverge = merge_on_diverge
        self.branch_policy = branch_policy or BranchPolicy()
        self.timeout = timeout
        self.preserve_timestamps = preserve_timestamps
        self.cleanup_on_error = cleanup_on_error
        self.separate_org_dirs = separate_org_dirs
        self.verify_remote_url = verify_remote_url
        self.remote = remote
        self.analyzer = RepositoryStateAnalyzer(timeout=timeout, remote=remote, prune=prune)
        self.selector = BranchSelector()
        self.preserver = TimestampPreserver(timeout=timeout)

    @classmethod
    def from_config(cls, config: Config) -> "SafePuller":
        return cls(
            base_dir=config.sync.base_dir,
            fast_forward_only=config.sync.fast_forward_only,
            auto_stash=config.sync.auto_stash,
            merge_on_diverge=config.sync.merge_on_diverge,
            branch_policy=config.branch_policy,
            timeout=config.sync.timeout,
            preserve_timestamps=config.sync.preserve_timestamps,
            cleanup_on_error=config.advanced.cleanup_on_error,
            separate_org_dirs=config.advanced.separate_org_dirs,
            verify_remote_url=config.advanced.verify_remote_url,
            prune=config.advanced.fetch_prune,
        )

    def checkout_path(self, descriptor: RepositoryDescriptor) -> Path:
        return descriptor.checkout_path(self.base_dir, self.separate_org_dirs)

    def decide(
        self, analysis: RepositoryAnalysis, selection: BranchSelection | None = None
    ) -> SyncDecision:
        """Maps an analysis (and optional branch choice) to one decision.

        Args:
            analysis (RepositoryAnalysis): The checkout's derived state.
            selection (BranchSelection | None): The branch choice. A switch is
                only proposed when the working tree is clean.

        Returns:
            SyncDecision: The decision.
        """
        state = analysis.state
        if state is RepositoryState.MISSING:
            return SyncDecision.clone()
        if state is RepositoryState.CONFLICTED:
            return SyncDecision.skip(
                SkipReason.CONFLICTED_STATE, "merge, rebase or conflict in progress"
            )
        if state is RepositoryState.DIRTY:
            if self.auto_stash and analysis.ahead == 0 and analysis.behind > 0:
                return SyncDecision.pull(
                    f"stash {analysis.changed_paths} change(s) and pull {analysis.behind} commit(s)",
                    stash=True,
                )
            return SyncDecision.skip(
                SkipReason.DIRTY_WORKING_TREE,
                f"{analysis.changed_paths} uncommitted change(s)",
            )

        if selection is not None:
            if selection.excluded:
                return SyncDecision.skip(
                    SkipReason.EXCLUDED_BRANCH,
                    f"branch '{selection.current}' is excluded and no other branch is eligible",
                )
            if selection.requires_switch:
                return SyncDecision.switch_branch(
                    selection.target,
                    f"'{selection.target}' is the most recently updated branch",
                )

        if state is RepositoryState.DIVERGED:
            counts = f"ahead {analysis.ahead}, behind {analysis.behind}"
            if self.fast_forward_only:
                return SyncDecision.fetch_only(f"diverged ({counts}), fast-forward impossible")
            if self.merge_on_diverge:
                return SyncDecision.pull(f"diverged ({counts}), merging", merge=True)
            return SyncDecision.skip(SkipReason.DIVERGED, f"diverged ({counts})")
        if state is RepositoryState.BEHIND_ONLY:
            return SyncDecision.pull(f"behind by {analysis.behind} commit(s)")
        if state is RepositoryState.AHEAD_ONLY:
            return SyncDecision.no_op(f"ahead by {analysis.ahead} commit(s), nothing to pull")
        return SyncDecision.no_op("up to date")

    def plan(
        self,
        descriptor: RepositoryDescriptor,
        path: Path | None = None,
        allow_switch: bool = True,
        refresh: bool = True,
    ) -> SyncPlan:
        """Analyzes a repository and decides what to do, without acting.

        Args:
            descriptor (RepositoryDescriptor): The repository.
            path (Path | None): Overrides the derived checkout path.
            allow_switch (bool): Whether a branch switch may be proposed.
            refresh (bool): Fetch from the remote while analyzing.

        Returns:
            SyncPlan: The analysis and decision.

        Raises:
            StateDetectionError: If the checkout cannot be inspected.
            GitTimeoutError: If a git operation times out.
        """
        path = path or self.checkout_path(descriptor)
        analysis = self.analyzer.analyze(path, refresh=refresh)
        if analysis.state is RepositoryState.MISSING:
            return SyncPlan(descriptor, path, analysis, None, SyncDecision.clone())

        repo = self.analyzer.open(path)
        if self.verify_remote_url:
            actual = repo.remote_url()
            if actual is not None and not remote_urls_match(actual, descriptor.remote_url):
                decision = SyncDecision.skip(
                    SkipReason.ERROR,
                    f"remote '{self.remote}' points to {actual}, expected {descriptor.remote_url}",
                )
                return SyncPlan(descriptor, path, analysis, None, decision, refresh)

        selection = None
        if allow_switch and self.branch_policy.strategy is BranchStrategy.MOST_RECENT:
            selection = self.selector.select(
                analysis.checkout.current_branch,
                repo.remote_branches(),
                self.branch_policy,
            )
        decision = self.decide(analysis, selection)
        return SyncPlan(descriptor, path, analysis, selection, decision, refresh)

    def apply(self, plan: SyncPlan) -> SyncOutcome:
        """Executes the plan's decision.

        Args:
            plan (SyncPlan): The plan to execute.

        Returns:
            SyncOutcome: The event to record and whether the checkout changed.

        Raises:
            GitCommandError: If a git command fails.
            GitTimeoutError: If a git command times out.
            FilesystemError: If the checkout's parent directory cannot be created.
        """
        decision = plan.decision
        kind = decision.kind
        if kind is DecisionKind.CLONE:
            return self._clone(plan)
        if kind is DecisionKind.PULL:
            return self._pull(plan)

        expected = plan.expected_event
        if kind is DecisionKind.FETCH_ONLY:
            if not plan.fetched:
                self.analyzer.open(plan.path).fetch(prune=self.analyzer.prune)
            return SyncOutcome(plan.descriptor, decision, expected, decision.note)
        if kind is DecisionKind.SWITCH_BRANCH:
            self.analyzer.open(plan.path).checkout_branch(decision.target)
            detail = f"switched from '{plan.analysis.checkout.current_branch}' to '{decision.target}'"
            logger.info(f"{plan.descriptor.full_name}: {detail}")
            return SyncOutcome(plan.descriptor, decision, expected, detail, mutated=True)
        return SyncOutcome(plan.descriptor, decision, expected, decision.note)

    def sync(
        self, descriptor: RepositoryDescriptor, token: CancellationToken | None = None
    ) -> SyncOutcome:
        """Plans and applies the decision for one repository.

        A branch switch is followed by one more plan/apply round on the new
        branch (never a second switch). Per-repository failures are returned
        as SyncError outcomes rather than raised.

        Args:
            descriptor (RepositoryDescriptor): The repository.
            token (CancellationToken | None): Checked between steps.

        Returns:
            SyncOutcome: Exactly one outcome for the repository.
        """
        def cancelled() -> bool:
            return token is not None and token.cancelled

        try:
            plan = self.plan(descriptor)
            if cancelled():
                return SyncOutcome.failure(
                    descriptor, SkipReason.CANCELLED, "cancelled before acting"
                )
            logger.debug(f"{descriptor.full_name}: {plan.decision.describe()} ({plan.decision.note})")
            outcome = self.apply(plan)

            if plan.decision.kind is DecisionKind.SWITCH_BRANCH:
                if cancelled():
                    return SyncOutcome.failure(
                        descriptor,
                        SkipReason.CANCELLED,
                        f"{outcome.detail}; cancelled before syncing the new branch",
                    )
                follow_up = self.apply(
                    self.plan(descriptor, plan.path, allow_switch=False, refresh=False)
                )
                if follow_up.event_type is EventType.SYNC_ERROR:
                    return SyncOutcome(
                        descriptor,
                        follow_up.decision,
                        EventType.SYNC_ERROR,
                        f"{outcome.detail}; then {follow_up.detail}",
                        mutated=True,
                    )
                outcome = SyncOutcome(
                    descriptor,
                    plan.decision,
                    EventType.BRANCH_SWITCH,
                    f"{outcome.detail}; then {follow_up.event_type.value}: {follow_up.detail}",
                    mutated=True,
                )
        except GitTimeoutError as e:
            logger.error(f"{descriptor.full_name}: {e}")
            return SyncOutcome.failure(descriptor, SkipReason.TIMEOUT, str(e))
        except (GitCommandError, StateDetectionError, FilesystemError) as e:
            logger.error(f"{descriptor.full_name}: {e}")
            return SyncOutcome.failure(descriptor, SkipReason.ERROR, str(e))

        if outcome.mutated and self.preserve_timestamps:
            self.preserver.preserve(plan.path)
        return outcome

    def _clone(self, plan: SyncPlan) -> SyncOutcome:
        path = plan.path
        existed = path.exists()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create {path.parent}: {e}") from e

        logger.info(f"Cloning {plan.descriptor.remote_url} into {path}")
        try:
            repo = GitRepo.clone(
                plan.descriptor.remote_url, path, timeout=self.timeout, remote=self.remote
            )
        except (GitCommandError, GitTimeoutError):
            if self.cleanup_on_error:
                self._cleanup_partial_clone(path, existed)
            raise

        detail = f"cloned into {path}"
        if self.branch_policy.strategy is BranchStrategy.MOST_RECENT:
            selection = self.selector.select(
                repo.current_branch(), repo.remote_branches(), self.branch_policy
            )
            if selection.requires_switch:
                repo.checkout_branch(selection.target)
                detail = f"{detail} on branch '{selection.target}'"
        return SyncOutcome(
            plan.descriptor, plan.decision, EventType.CLONED, detail, mutated=True
        )

    def _cleanup_partial_clone(self, path: Path, existed: bool) -> None:
        if not path.exists():
            return
        logger.warning(f"Removing partial clone at {path}")
        try:
            if existed:
                for child in path.iterdir():
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
            else:
                shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Failed to clean up {path}: {e}")

    def _pull(self, plan: SyncPlan) -> SyncOutcome:
        decision = plan.decision
        repo = self.analyzer.open(plan.path)
        tracking = plan.analysis.checkout.tracking_branch
        branch = tracking.removeprefix(f"{self.remote}/") if tracking else None

        if decision.stash:
            if not repo.stash_push(STASH_MESSAGE):
                return SyncOutcome(
                    plan.descriptor,
                    SyncDecision.skip(SkipReason.DIRTY_WORKING_TREE, decision.note),
                    EventType.SKIPPED_DIRTY,
                    "auto-stash did not record a stash entry, leaving changes in place",
                )
            try:
                repo.pull(branch, ff_only=not decision.merge)
            except (GitCommandError, GitTimeoutError):
                self._restore_stash(repo, plan)
                raise
            if not self._restore_stash(repo, plan):
                return SyncOutcome(
                    plan.descriptor,
                    decision,
                    EventType.SYNC_ERROR,
                    f"pulled {plan.analysis.behind} commit(s) but the auto-stash could "
                    "not be re-applied; changes are kept in the stash",
                    mutated=True,
                )
        else:
            repo.pull(branch, ff_only=not decision.merge)

        verb = "merged" if decision.merge else "fast-forwarded"
        detail = f"{verb} {plan.analysis.behind} commit(s)"
        logger.info(f"{plan.descriptor.full_name}: {detail}")
        return SyncOutcome(plan.descriptor, decision, EventType.PULLED, detail, mutated=True)

    def _restore_stash(self, repo: GitRepo, plan: SyncPlan) -> bool:
        try:
            repo.stash_pop()
            return True
        except (GitCommandError, GitTimeoutError) as e:
            logger.error(
                f"{plan.descriptor.full_name}: could not re-apply auto-stash, kept in stash: {e}"
            )
            return False
