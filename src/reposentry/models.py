import datetime
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


@dataclass(frozen=True)
class RepositoryDescriptor:
    """A repository to keep in sync, as handed over by discovery.

    Attributes:
        name (str): The repository name (e.g. 'reposentry').
        owner (str): The owning user or organization.
        remote_url (str): The URL to clone from and compare against.
        default_branch (str | None): The remote's default branch, if known.
        size_bytes (int | None): The repository size, if known.
        updated_at (datetime.datetime | None): Last remote activity, if known.
    """

    name: str
    owner: str
    remote_url: str
    default_branch: str | None = None
    size_bytes: int | None = None
    updated_at: datetime.datetime | None = None

    @property
    def full_name(self) -> str:
        """The `owner/name` identifier used throughout the event log."""
        return f"{self.owner}/{self.name}"

    def checkout_path(self, base_dir: Path, separate_org_dirs: bool = True) -> Path:
        """Computes where this repository lives under the base directory.

        Args:
            base_dir (Path): The root directory holding all checkouts.
            separate_org_dirs (bool): Whether to nest checkouts per owner.

        Returns:
            Path: `base/owner/name` or `base/owner-name`.
        """
        if separate_org_dirs:
            return base_dir / self.owner / self.name
        return base_dir / f"{self.owner}-{self.name}"


@dataclass(frozen=True)
class RepositoryCheckout:
    """A local checkout as found on disk."""

    path: Path
    exists: bool
    current_branch: str | None = None
    tracking_branch: str | None = None


class RepositoryState(Enum):
    """The derived state of a checkout. Recomputed every pass, never persisted."""

    CLEAN = "clean"
    DIRTY = "dirty"
    AHEAD_ONLY = "ahead_only"
    BEHIND_ONLY = "behind_only"
    DIVERGED = "diverged"
    CONFLICTED = "conflicted"
    MISSING = "missing"

    @property
    def has_clean_tree(self) -> bool:
        """True when the working tree holds nothing that could be lost."""
        return self in (
            RepositoryState.CLEAN,
            RepositoryState.AHEAD_ONLY,
            RepositoryState.BEHIND_ONLY,
            RepositoryState.DIVERGED,
        )


@dataclass(frozen=True)
class RepositoryAnalysis:
    """The result of inspecting one checkout.

    Attributes:
        checkout (RepositoryCheckout): What was found on disk.
        state (RepositoryState): The derived state.
        ahead (int): Local commits missing from the tracking branch.
        behind (int): Tracking-branch commits missing locally.
        changed_paths (int): Entries reported by `git status --porcelain`.
    """

    checkout: RepositoryCheckout
    state: RepositoryState
    ahead: int = 0
    behind: int = 0
    changed_paths: int = 0


class BranchStrategy(Enum):
    DEFAULT = "default"
    MOST_RECENT = "most-recent"


@dataclass(frozen=True)
class BranchPolicy:
    """Which branch a checkout should track.

    Attributes:
        strategy (BranchStrategy): `default` keeps the current branch,
            `most-recent` follows the branch with the newest commit.
        exclude_patterns (tuple[str, ...]): Globs of branches never selected.
    """

    strategy: BranchStrategy = BranchStrategy.DEFAULT
    exclude_patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class RemoteBranch:
    name: str
    committed_at: int


@dataclass(frozen=True)
class BranchSelection:
    """Outcome of branch selection for one checkout.

    Attributes:
        current (str | None): The checked-out branch.
        target (str | None): The branch the checkout should be on.
        excluded (bool): True when no eligible branch exists and the current
            branch itself matches an exclusion pattern.
    """

    current: str | None
    target: str | None
    excluded: bool = False

    @property
    def requires_switch(self) -> bool:
        return (
            not self.excluded
            and self.target is not None
            and self.current is not None
            and self.target != self.current
        )


class DecisionKind(Enum):
    CLONE = "clone"
    PULL = "pull"
    FETCH_ONLY = "fetch_only"
    SWITCH_BRANCH = "switch_branch"
    SKIP = "skip"
    NO_OP = "no_op"


class SkipReason(Enum):
    DIRTY_WORKING_TREE = "dirty_working_tree"
    DIVERGED = "diverged"
    EXCLUDED_BRANCH = "excluded_branch"
    CONFLICTED_STATE = "conflicted_state"
    TIMEOUT = "timeout"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SyncDecision:
    """The single action chosen for a repository in a pass.

    Attributes:
        kind (DecisionKind): What to do.
        target (str | None): The branch to switch to (SWITCH_BRANCH only).
        reason (SkipReason | None): Why nothing is done (SKIP only).
        stash (bool): Stash local changes around the pull (auto-stash opt-in).
        merge (bool): Allow a merge commit instead of a fast-forward.
        note (str): Human-readable context for logs and events.
    """

    kind: DecisionKind
    target: str | None = None
    reason: SkipReason | None = None
    stash: bool = False
    merge: bool = False
    note: str = ""

    @classmethod
    def clone(cls) -> "SyncDecision":
        return cls(DecisionKind.CLONE, note="checkout missing")

    @classmethod
    def pull(cls, note: str = "", stash: bool = False, merge: bool = False) -> "SyncDecision":
        return cls(DecisionKind.PULL, stash=stash, merge=merge, note=note)

    @classmethod
    def fetch_only(cls, note: str = "") -> "SyncDecision":
        return cls(DecisionKind.FETCH_ONLY, note=note)

    @classmethod
    def switch_branch(cls, target: str, note: str = "") -> "SyncDecision":
        return cls(DecisionKind.SWITCH_BRANCH, target=target, note=note)

    @classmethod
    def skip(cls, reason: SkipReason, note: str = "") -> "SyncDecision":
        return cls(DecisionKind.SKIP, reason=reason, note=note)

    @classmethod
    def no_op(cls, note: str = "") -> "SyncDecision":
        return cls(DecisionKind.NO_OP, note=note)

    @property
    def is_mutating(self) -> bool:
        """Whether executing this decision may change the working tree."""
        return self.kind in (
            DecisionKind.CLONE,
            DecisionKind.PULL,
            DecisionKind.SWITCH_BRANCH,
        )

    def describe(self) -> str:
        if self.kind is DecisionKind.SWITCH_BRANCH:
            return f"switch_branch({self.target})"
        if self.kind is DecisionKind.SKIP and self.reason:
            return f"skip({self.reason.value})"
        return self.kind.value


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class EventType(Enum):
    """Every outcome the event log can record for a repository."""

    CLONED = "cloned"
    PULLED = "pulled"
    BRANCH_SWITCH = "branch_switch"
    FETCHED_ONLY = "fetched_only"
    UP_TO_DATE = "up_to_date"
    SKIPPED_AHEAD = "skipped_ahead"
    SKIPPED_DIRTY = "skipped_dirty"
    SKIPPED_CONFLICT = "skipped_conflict"
    SKIPPED_EXCLUDED_BRANCH = "skipped_excluded_branch"
    SYNC_ERROR = "sync_error"

    @property
    def severity(self) -> Severity:
        if self is EventType.SYNC_ERROR:
            return Severity.ERROR
        if self in (
            EventType.BRANCH_SWITCH,
            EventType.SKIPPED_DIRTY,
            EventType.SKIPPED_CONFLICT,
            EventType.FETCHED_ONLY,
        ):
            return Severity.WARNING
        return Severity.INFO

    @property
    def is_success(self) -> bool:
        """Whether the repository ended the pass in a synchronized-or-better state."""
        return self in SUCCESS_EVENTS

    @property
    def is_skip(self) -> bool:
        return self in (
            EventType.SKIPPED_DIRTY,
            EventType.SKIPPED_CONFLICT,
            EventType.SKIPPED_EXCLUDED_BRANCH,
        )


SUCCESS_EVENTS = frozenset(
    {
        EventType.CLONED,
        EventType.PULLED,
        EventType.BRANCH_SWITCH,
        EventType.FETCHED_ONLY,
        EventType.UP_TO_DATE,
        EventType.SKIPPED_AHEAD,
    }
)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class SyncEvent:
    """One record of the append-only event log.

    Attributes:
        repository (str): The repository identifier (`owner/name`).
        event_type (EventType): What happened.
        detail (str): Free text, e.g. captured git stderr.
        timestamp (datetime.datetime): When it happened (UTC).
        acknowledged (bool): Set later by the `events ack` command.
        id (int | None): Assigned by the store on append.
        pass_id (int | None): The pass that produced the event.
    """

    repository: str
    event_type: EventType
    detail: str = ""
    timestamp: datetime.datetime = field(default_factory=utcnow)
    acknowledged: bool = False
    id: int | None = None
    pass_id: int | None = None

    @property
    def severity(self) -> Severity:
        return self.event_type.severity


@dataclass(frozen=True)
class SyncOutcome:
    """The result of processing one repository in a pass."""

    descriptor: RepositoryDescriptor
    decision: SyncDecision
    event_type: EventType
    detail: str = ""
    mutated: bool = False

    @classmethod
    def failure(
        cls, descriptor: RepositoryDescriptor, reason: SkipReason, detail: str
    ) -> "SyncOutcome":
        return cls(
            descriptor=descriptor,
            decision=SyncDecision.skip(reason, note=detail),
            event_type=EventType.SYNC_ERROR,
            detail=detail,
        )

    @property
    def severity(self) -> Severity:
        return self.event_type.severity

    def to_event(self, pass_id: int | None = None) -> SyncEvent:
        return SyncEvent(
            repository=self.descriptor.full_name,
            event_type=self.event_type,
            detail=self.detail,
            pass_id=pass_id,
        )


@dataclass
class SyncReport:
    """Aggregate of one pass, consumed by the CLI and daemon logging.

    Attributes:
        counts (Counter[EventType]): Number of repositories per outcome.
        elapsed (float): Wall-clock seconds for the pass.
        concurrency (int): The effective worker pool size.
        peak_parallel (int): The most repositories observed in flight at once.
        cancelled (int): Repositories never started because of cancellation.
        dry_run (bool): Whether git actions and event writes were suppressed.
        outcomes (list[SyncOutcome]): Per-repository results.
    """

    counts: Counter = field(default_factory=Counter)
    elapsed: float = 0.0
    concurrency: int = 0
    peak_parallel: int = 0
    cancelled: int = 0
    dry_run: bool = False
    outcomes: list[SyncOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def successful(self) -> int:
        return sum(n for t, n in self.counts.items() if t.is_success)

    @property
    def skipped(self) -> int:
        return sum(n for t, n in self.counts.items() if t.is_skip)

    @property
    def failed(self) -> int:
        return self.counts[EventType.SYNC_ERROR]

    def add(self, outcome: SyncOutcome) -> None:
        self.outcomes.append(outcome)
        self.counts[outcome.event_type] += 1

    def summary(self) -> str:
        prefix = "Dry run" if self.dry_run else "Sync"
        text = (
            f"{prefix} completed in {self.elapsed:.2f}s: {self.total} repos, "
            f"{self.successful} successful, {self.failed} failed, "
            f"{self.skipped} skipped (concurrency {self.concurrency})"
        )
        if self.cancelled:
            text += f", {self.cancelled} not started (cancelled)"
        return text
