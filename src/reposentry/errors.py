"""Exception hierarchy for RepoSentry."""


class RepoSentryError(Exception):
    """Base error for all custom exceptions."""


class GitCommandError(RepoSentryError, RuntimeError):
    """Raised when a git invocation exits non-zero."""

    def __init__(self, command: list[str], returncode: int, stderr: str | None = None):
        self.command = command
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        message = f"Git error ({' '.join(command)}): exit {returncode}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class GitTimeoutError(RepoSentryError, TimeoutError):
    """Raised when a git invocation exceeds its wall-clock budget.

    The child process has already been killed when this is raised.
    """

    def __init__(self, command: list[str], timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Git operation timed out after {timeout:g}s: {' '.join(command)}")


class StateDetectionError(RepoSentryError, ValueError):
    """Raised when a checkout exists but its git metadata cannot be read."""


class FilesystemError(RepoSentryError, OSError):
    """Raised when a directory cannot be created or an mtime cannot be set."""


class FatalSyncError(RepoSentryError):
    """Raised when a pass cannot start at all (e.g. unusable base directory)."""


class EventStoreError(RepoSentryError):
    """Raised when the event log is unreachable or corrupt."""


class PassInProgressError(RepoSentryError):
    """Raised when a pass is requested while another one is still running."""
