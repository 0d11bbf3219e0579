import logging
from collections.abc import Iterable
from fnmatch import fnmatchcase

from .constants import APP_NAME
from .models import BranchPolicy, BranchSelection, BranchStrategy, RemoteBranch

logger = logging.getLogger(APP_NAME)


def is_excluded(branch: str, patterns: Iterable[str]) -> bool:
    """Checks a branch name against exclusion globs (case-sensitive)."""
    return any(fnmatchcase(branch, pattern) for pattern in patterns)


class BranchSelector:
    """Chooses which branch a checkout should be on.

    The selector is pure: it only looks at the current branch name and the
    remote branch listing it is given.
    """

    def select(
        self,
        current: str | None,
        branches: Iterable[RemoteBranch],
        policy: BranchPolicy,
    ) -> BranchSelection:
        """Applies the policy.

        Args:
            current (str | None): The checked-out branch (None if detached or
                the checkout is about to be cloned).
            branches (Iterable[RemoteBranch]): Remote branches with commit times.
            policy (BranchPolicy): Strategy and exclusion patterns.

        Returns:
            BranchSelection: The target branch. `excluded` is set when nothing
                is eligible and the current branch is itself excluded.
        """
        if policy.strategy is BranchStrategy.DEFAULT:
            return BranchSelection(current=current, target=current)

        candidates = [
            b
            for b in branches
            if b.name != "HEAD" and not is_excluded(b.name, policy.exclude_patterns)
        ]
        if not candidates:
            excluded = current is not None and is_excluded(current, policy.exclude_patterns)
            if excluded:
                logger.debug(f"No eligible branch and current branch '{current}' is excluded")
            return BranchSelection(current=current, target=current, excluded=excluded)

        newest = min(candidates, key=lambda b: (-b.committed_at, b.name))
        return BranchSelection(current=current, target=newest.name)
