import logging
import threading
import time
from collections.abc import Iterable
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from pathlib import Path

from .cancellation import CancellationToken, SingleFlight
from .config import Config, LimitsConfig
from .constants import APP_NAME
from .errors import (
    EventStoreError,
    FatalSyncError,
    GitCommandError,
    GitTimeoutError,
    StateDetectionError,
)
from .events import EventStore
from .models import RepositoryDescriptor, Severity, SkipReason, SyncOutcome, SyncReport
from .puller import SafePuller

logger = logging.getLogger(APP_NAME)


def adaptive_concurrency(
    repositories: list[RepositoryDescriptor],
    max_parallel: int,
    limits: LimitsConfig | None = None,
) -> int:
    """Derives the worker count for a batch from its size profile.

    Large average repository size and large batches both reduce the number
    of simultaneous transfers. The result never exceeds `max_parallel`.

    Args:
        repositories (list[RepositoryDescriptor]): The batch.
        max_parallel (int): The configured upper bound.
        limits (LimitsConfig | None): Thresholds. Defaults apply when omitted.

    Returns:
        int: A worker count in [1, max_parallel].
    """
    limits = limits or LimitsConfig()
    base = max(1, max_parallel)
    count = len(repositories)

    known = [r.size_bytes for r in repositories if r.size_bytes is not None]
    avg_size = sum(known) / max(count, 1)
    if avg_size > limits.large_repo_threshold:
        size_factor = 0.5
    elif avg_size > limits.medium_repo_threshold:
        size_factor = 0.75
    else:
        size_factor = 1.0

    if count > limits.repo_count_threshold:
        count_factor = max(base * 0.6, 3.0) / base
    elif count > limits.moderate_repo_count:
        count_factor = 0.8
    else:
        count_factor = 1.0

    calculated = round(base * size_factor * count_factor)
    return min(max(calculated, 1), base)


class ParallelSyncOrchestrator:
    """Runs sync passes over many repositories with bounded parallelism.

    Each repository is owned by exactly one worker for the duration of a
    pass and yields exactly one event. Only one pass runs at a time per
    orchestrator; a concurrent request fails with PassInProgressError.

    Attributes:
        puller (SafePuller): Plans and executes per-repository decisions.
        store (EventStore | None): The event log. Events are only logged when None.
        max_parallel (int): The configured upper bound on workers.
        limits (LimitsConfig): Thresholds for adaptive concurrency.
    """

    def __init__(
        self,
        puller: SafePuller,
        store: EventStore | None = None,
        max_parallel: int = 4,
        limits: LimitsConfig | None = None,
    ):
        self.puller = puller
        self.store = store
        self.max_parallel = max_parallel
        self.limits = limits or LimitsConfig()
        self._gate = SingleFlight()
        self._in_flight = 0
        self._peak = 0
        self._counter_lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: Config, store: EventStore | None = None
    ) -> "ParallelSyncOrchestrator":
        return cls(
            SafePuller.from_config(config),
            store=store,
            max_parallel=config.sync.max_parallel,
            limits=config.limits,
        )

    @property
    def busy(self) -> bool:
        return self._gate.busy

    def run_pass(
        self,
        repositories: Iterable[RepositoryDescriptor],
        token: CancellationToken | None = None,
    ) -> SyncReport:
        """Synchronizes every repository once.

        Args:
            repositories (Iterable[RepositoryDescriptor]): The batch.
            token (CancellationToken | None): Stops dispatch of new jobs when
                cancelled. Jobs already running finish their current step.

        Returns:
            SyncReport: Counts per event type and pass metrics.

        Raises:
            PassInProgressError: If another pass is running.
            FatalSyncError: If the base directory is unusable.
            EventStoreError: If the event log cannot be written.
        """
        token = token or CancellationToken()
        with self._gate:
            batch = self._deduplicate(repositories)
            self._check_base_dir()
            return self._run(batch, token)

    def dry_run(self, repositories: Iterable[RepositoryDescriptor]) -> SyncReport:
        """Plans every repository without fetching, acting, or recording events.

        Returns:
            SyncReport: The events the pass would produce.
        """
        with self._gate:
            batch = self._deduplicate(repositories)
            report = SyncReport(
                dry_run=True,
                concurrency=adaptive_concurrency(batch, self.max_parallel, self.limits),
            )
            start = time.monotonic()
            for descriptor in batch:
                try:
                    plan = self.puller.plan(descriptor, refresh=False)
                    outcome = SyncOutcome(
                        descriptor, plan.decision, plan.expected_event, plan.decision.note
                    )
                except GitTimeoutError as e:
                    outcome = SyncOutcome.failure(descriptor, SkipReason.TIMEOUT, str(e))
                except (StateDetectionError, GitCommandError) as e:
                    outcome = SyncOutcome.failure(descriptor, SkipReason.ERROR, str(e))
                except Exception as e:
                    logger.exception(f"Unexpected failure planning {descriptor.full_name}")
                    outcome = SyncOutcome.failure(descriptor, SkipReason.ERROR, repr(e))
                report.add(outcome)
            report.elapsed = time.monotonic() - start
            return report

    def _deduplicate(
        self, repositories: Iterable[RepositoryDescriptor]
    ) -> list[RepositoryDescriptor]:
        seen: dict[str, RepositoryDescriptor] = {}
        for descriptor in repositories:
            if descriptor.full_name in seen:
                logger.warning(f"Duplicate repository {descriptor.full_name} ignored")
                continue
            seen[descriptor.full_name] = descriptor
        return list(seen.values())

    def _check_base_dir(self) -> None:
        base = self.puller.base_dir
        try:
            base.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FatalSyncError(f"Base directory {base} is unusable: {e}") from e
        if not base.is_dir():
            raise FatalSyncError(f"Base directory {base} is not a directory")

    def _run(
        self, batch: list[RepositoryDescriptor], token: CancellationToken
    ) -> SyncReport:
        concurrency = adaptive_concurrency(batch, self.max_parallel, self.limits)
        report = SyncReport(concurrency=concurrency)
        pass_id = self.store.begin_pass(len(batch)) if self.store else None
        self._in_flight = 0
        self._peak = 0
        logger.info(
            f"Syncing {len(batch)} repositories "
            f"(max_parallel={self.max_parallel}, effective={concurrency})"
        )

        start = time.monotonic()
        status = "completed"
        abort = CancellationToken()
        try:
            with ThreadPoolExecutor(
                max_workers=concurrency, thread_name_prefix=APP_NAME
            ) as executor:
                futures: dict[Future, RepositoryDescriptor] = {
                    executor.submit(
                        self._worker, descriptor, token, pass_id, abort
                    ): descriptor
                    for descriptor in batch
                }
                done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
                for future in done:
                    if future.exception() is not None:
                        for pending in not_done:
                            pending.cancel()
                        abort.cancel()
                        raise future.exception()
                for future in done:
                    outcome = future.result()
                    if outcome is None:
                        report.cancelled += 1
                    else:
                        report.add(outcome)
        except EventStoreError:
            status = "failed"
            raise
        finally:
            report.elapsed = time.monotonic() - start
            report.peak_parallel = self._peak
            if report.cancelled or token.cancelled:
                status = "cancelled" if status == "completed" else status
            if self.store and pass_id is not None and status != "failed":
                self.store.finish_pass(pass_id, status, report)

        logger.info(report.summary())
        return report

    def _worker(
        self,
        descriptor: RepositoryDescriptor,
        token: CancellationToken,
        pass_id: int | None,
        abort: CancellationToken | None = None,
    ) -> SyncOutcome | None:
        """Processes one repository. Returns None if it was never started.

        `abort` stops this pass only, after a fatal error in another worker.
        `token` belongs to the caller and is never cancelled here.
        """
        if token.cancelled or (abort is not None and abort.cancelled):
            return None

        with self._counter_lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
        try:
            try:
                outcome = self.puller.sync(descriptor, token)
            except Exception as e:
                logger.exception(f"Unexpected failure syncing {descriptor.full_name}")
                outcome = SyncOutcome.failure(descriptor, SkipReason.ERROR, repr(e))
        finally:
            with self._counter_lock:
                self._in_flight -= 1

        level = logging.INFO if outcome.severity is Severity.INFO else logging.WARNING
        logger.log(level, f"{descriptor.full_name}: {outcome.event_type.value} {outcome.detail}")
        if self.store is not None:
            self.store.append(outcome.to_event(pass_id))
        return outcome
