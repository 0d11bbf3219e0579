import threading

from .errors import PassInProgressError


class CancellationToken:
    """A cooperative stop signal shared by the daemon loop and workers.

    Cancelling never interrupts a running git command. Workers poll the
    token between steps and the orchestrator stops dispatching new jobs.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleeps until cancelled or until `timeout` elapses.

        Returns:
            bool: True if the token was cancelled.
        """
        return self._event.wait(timeout)


class SingleFlight:
    """Admits at most one holder at a time and rejects the rest immediately."""

    def __init__(self):
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> "SingleFlight":
        if not self._lock.acquire(blocking=False):
            raise PassInProgressError("A sync pass is already in progress")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._lock.release()
