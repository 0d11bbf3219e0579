"""RepoSentry: keeps many local git checkouts in sync with their remotes.

This package provides the sync decision engine (state analysis, branch
selection, safe pulls), the parallel orchestrator, the SQLite event log,
and the command-line interface and daemon loop that drive them. Local
uncommitted work is never discarded.
"""

from . import (
    analyzer,
    branches,
    cancellation,
    cli,
    config,
    constants,
    daemon,
    discovery,
    errors,
    events,
    git_wrapper,
    models,
    orchestrator,
    puller,
    timestamps,
)

__all__ = [
    "analyzer",
    "branches",
    "cancellation",
    "cli",
    "config",
    "constants",
    "daemon",
    "discovery",
    "errors",
    "events",
    "git_wrapper",
    "models",
    "orchestrator",
    "puller",
    "timestamps",
]
