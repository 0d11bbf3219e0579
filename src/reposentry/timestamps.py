import logging
import os
import time
from pathlib import Path

from .constants import APP_NAME, MAX_VALID_TIMESTAMP, MIN_VALID_TIMESTAMP
from .errors import FilesystemError, GitCommandError, GitTimeoutError, StateDetectionError
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)


def is_valid_timestamp(timestamp: int) -> bool:
    return MIN_VALID_TIMESTAMP <= timestamp <= MAX_VALID_TIMESTAMP


def set_mtime(path: Path, timestamp: int) -> None:
    """Sets the modification time of `path`, keeping the access time at now.

    Raises:
        FilesystemError: If the filesystem refuses the change.
    """
    try:
        os.utime(path, (time.time(), timestamp))
    except OSError as e:
        raise FilesystemError(f"Cannot set mtime of {path}: {e}") from e


class TimestampPreserver:
    """Sets a checkout directory's mtime to the time of its latest commit.

    Sorting a directory of checkouts by modification time then shows the
    repositories that changed most recently. Failures only produce warnings.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    def preserve(self, path: Path) -> bool:
        """Applies the latest commit time to `path`.

        Args:
            path (Path): The checkout directory.

        Returns:
            bool: True if the mtime was updated. False if the commit time is
                unknown or outside the valid range, or on any failure.
        """
        try:
            timestamp = GitRepo(path, timeout=self.timeout).last_commit_timestamp()
        except (StateDetectionError, GitCommandError, GitTimeoutError, ValueError) as e:
            logger.warning(f"Cannot read last commit time of {path}: {e}")
            return False

        if timestamp is None:
            return False
        if not is_valid_timestamp(timestamp):
            logger.warning(
                f"Ignoring out-of-range commit timestamp {timestamp} for {path}"
            )
            return False

        try:
            set_mtime(path, timestamp)
        except FilesystemError as e:
            logger.warning(str(e))
            return False
        logger.debug(f"Set mtime of {path} to {timestamp}")
        return True
