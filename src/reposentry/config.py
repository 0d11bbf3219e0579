import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import APP_NAME, CONFIG_FILE, DEFAULT_BRANCH_EXCLUDES, EVENTS_DB
from .models import BranchPolicy, BranchStrategy, RepositoryDescriptor

logger = logging.getLogger(APP_NAME)

SIZE_KEYS = {"max_log_size", "large_repo_threshold", "medium_repo_threshold"}
TIME_KEYS = {"timeout", "interval"}
POSITIVE_INT_KEYS = {
    "max_parallel",
    "timeout",
    "interval",
    "retention_days",
    "repo_count_threshold",
    "moderate_repo_count",
    "log_backup_count",
}


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid size format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)?$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2) or ""
    multiplier = {
        "": 1,
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m', '2d') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr|d|day)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
        "d": 86400,
        "day": 86400,
    }
    return int(num * multiplier[unit])


@dataclass
class SyncConfig:
    """Core synchronization settings.

    Attributes:
        base_directory (str): Root directory holding every managed checkout.
        max_parallel (int): Upper bound on concurrently synced repositories.
        timeout (int): Wall-clock seconds allowed for a single git operation.
        fast_forward_only (bool): Refuse anything but fast-forward pulls.
        auto_stash (bool): Stash local changes around a pull when only behind.
        merge_on_diverge (bool): Allow merge pulls for diverged checkouts
            (only honoured when `fast_forward_only` is off).
        preserve_timestamps (bool): Set checkout mtime to the last commit time.
    """

    base_directory: str = "~/repos"
    max_parallel: int = 4
    timeout: int = 300
    fast_forward_only: bool = True
    auto_stash: bool = False
    merge_on_diverge: bool = False
    preserve_timestamps: bool = True

    @property
    def base_dir(self) -> Path:
        return Path(self.base_directory).expanduser()


@dataclass
class BranchConfig:
    """Branch selection settings.

    Attributes:
        strategy (str): 'default' or 'most-recent'.
        exclude_patterns (list[str]): Branch globs never selected.
    """

    strategy: str = BranchStrategy.DEFAULT.value
    exclude_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_BRANCH_EXCLUDES)
    )


@dataclass
class AdvancedConfig:
    """Rarely changed knobs.

    Attributes:
        cleanup_on_error (bool): Remove partial clones after a failed clone.
        separate_org_dirs (bool): Lay checkouts out as `base/owner/name`.
        verify_remote_url (bool): Skip checkouts whose origin URL differs.
        fetch_prune (bool): Prune deleted remote branches on fetch.
    """

    cleanup_on_error: bool = True
    separate_org_dirs: bool = True
    verify_remote_url: bool = True
    fetch_prune: bool = True


@dataclass
class DaemonConfig:
    """Daemon operational settings.

    Attributes:
        interval (int): Seconds between the start of consecutive passes.
    """

    interval: int = 1800


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
        log_backup_count (int): Rotated log files kept.
        large_repo_threshold (int): Average repo size halving concurrency.
        medium_repo_threshold (int): Average repo size reducing concurrency by a quarter.
        repo_count_threshold (int): Batch size above which concurrency is cut hardest.
        moderate_repo_count (int): Batch size above which concurrency is cut slightly.
    """

    max_log_size: int = 5 * 1024 * 1024
    log_backup_count: int = 3
    large_repo_threshold: int = 50_000_000
    medium_repo_threshold: int = 10_000_000
    repo_count_threshold: int = 50
    moderate_repo_count: int = 20


@dataclass
class EventsConfig:
    """Event log settings.

    Attributes:
        database (str | None): Path of the SQLite file (defaults to the XDG data dir).
        retention_days (int): Acknowledged events older than this are purged.
    """

    database: str | None = None
    retention_days: int = 30

    @property
    def db_path(self) -> Path:
        return Path(self.database).expanduser() if self.database else EVENTS_DB


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        sync (SyncConfig): Core sync settings.
        branches (BranchConfig): Branch selection policy.
        advanced (AdvancedConfig): Safety and layout toggles.
        daemon (DaemonConfig): Daemon behavior settings.
        limits (LimitsConfig): Resource limits and concurrency thresholds.
        events (EventsConfig): Event log settings.
        repositories (list[RepositoryDescriptor]): The configured manifest.
    """

    sync: SyncConfig = field(default_factory=SyncConfig)
    branches: BranchConfig = field(default_factory=BranchConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    repositories: list[RepositoryDescriptor] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults merged with a TOML file.

        Args:
            path (Path | None): The config file. Defaults to the XDG location.

        Returns:
            Config: The fully merged configuration object.
        """
        instance = cls()
        source = path or CONFIG_FILE
        if source.exists():
            instance._merge_from_file(source)
        return instance

    @property
    def branch_policy(self) -> BranchPolicy:
        return BranchPolicy(
            strategy=BranchStrategy(self.branches.strategy),
            exclude_patterns=tuple(self.branches.exclude_patterns),
        )

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
            return
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return

        for section in ("sync", "branches", "advanced", "daemon", "limits", "events"):
            if section not in data:
                continue
            if not isinstance(data[section], dict):
                logger.warning(f"Config section [{section}] must be a table. Ignoring.")
                continue
            setattr(
                self,
                section,
                self._update_dataclass(section, getattr(self, section), data[section]),
            )

        if "repositories" in data:
            self.repositories = self._parse_repositories(data["repositories"])

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k in SIZE_KEYS:
                    v = parse_size(v)
                elif k in TIME_KEYS:
                    v = parse_time(v)

                if k in POSITIVE_INT_KEYS and (
                    isinstance(v, bool) or not isinstance(v, int) or v < 1
                ):
                    raise ValueError(f"expected a positive integer, got {v!r}")
                if k == "strategy":
                    v = BranchStrategy(v).value
                if k == "exclude_patterns" and not (
                    isinstance(v, list) and all(isinstance(p, str) for p in v)
                ):
                    raise ValueError("expected a list of glob strings")
                default = getattr(instance, k)
                if isinstance(default, bool) and not isinstance(v, bool):
                    raise ValueError(f"expected true or false, got {v!r}")
                filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)

    @staticmethod
    def _parse_repositories(entries: Any) -> list[RepositoryDescriptor]:
        """Builds the repository manifest from `[[repositories]]` tables."""
        if not isinstance(entries, list):
            logger.warning("Config key 'repositories' must be an array of tables. Ignoring.")
            return []

        repos = []
        for index, entry in enumerate(entries):
            try:
                url = entry["url"]
                name = entry.get("name") or url.rstrip("/").split("/")[-1].removesuffix(".git")
                owner = entry.get("owner") or url.rstrip("/").replace(":", "/").split("/")[-2]
                size = entry.get("size")
                repos.append(
                    RepositoryDescriptor(
                        name=name,
                        owner=owner,
                        remote_url=url,
                        default_branch=entry.get("default_branch"),
                        size_bytes=parse_size(size) if size is not None else None,
                    )
                )
            except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
                logger.warning(f"Config error in [[repositories]] entry {index}: {e}. Skipping.")
        return repos
