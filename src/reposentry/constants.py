import os
from pathlib import Path

"""Global constants and filesystem layout for RepoSentry.

This module defines the on-disk layout (following XDG conventions), the
application identifiers, and the git-level constants shared by the sync core.
"""

# --- Identity ---
APP_NAME = "reposentry"
"""str: The application name, also used as the logger name."""

DEFAULT_REMOTE = "origin"
"""str: The remote every managed checkout is compared against."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / APP_NAME
"""Path: The directory for runtime state (logs, PID file)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The rotating daemon log file."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file storing the daemon's process ID."""

_XDG_DATA = os.environ.get("XDG_DATA_HOME")
_BASE_DATA = Path(_XDG_DATA) if _XDG_DATA else Path.home() / ".local/share"

DATA_DIR = _BASE_DATA / APP_NAME
"""Path: The directory holding durable data."""

EVENTS_DB = DATA_DIR / "state.db"
"""Path: The SQLite event log."""

_XDG_CONFIG = os.environ.get("XDG_CONFIG_HOME")
_BASE_CONFIG = Path(_XDG_CONFIG) if _XDG_CONFIG else Path.home() / ".config"

CONFIG_DIR: Path = _BASE_CONFIG / APP_NAME
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- Git / Logic Constants ---
GIT_LOCK_FILES = [
    "MERGE_HEAD",
    "REBASE_HEAD",
    "CHERRY_PICK_HEAD",
    "REVERT_HEAD",
    "BISECT_LOG",
    "rebase-merge",
    "rebase-apply",
]
"""
list[str]: Git internal files indicating an operation in progress
(merge/rebase/cherry-pick). A checkout holding any of them is Conflicted.
"""

DEFAULT_BRANCH_EXCLUDES = ["dependabot/*", "renovate/*"]
"""list[str]: Branch globs never chosen by the most-recent strategy."""

MIN_VALID_TIMESTAMP = 1104537600
"""int: 2005-01-01T00:00:00Z. Commit times before this are treated as garbage."""

MAX_VALID_TIMESTAMP = 2524608000
"""int: 2050-01-01T00:00:00Z. Commit times after this are treated as garbage."""

STASH_MESSAGE = "reposentry auto-stash"
"""str: Message attached to stashes created by the auto-stash opt-in."""
