import atexit
import datetime
import logging
import os
import signal
import sys
import time
from logging.handlers import RotatingFileHandler
from types import FrameType

from .cancellation import CancellationToken
from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .discovery import LocalDiscovery, ManifestDiscovery, RepositoryDiscovery
from .errors import EventStoreError, FatalSyncError, PassInProgressError
from .events import EventStore
from .models import SyncReport
from .orchestrator import ParallelSyncOrchestrator

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


def setup_logging(
    interactive: bool, verbose: bool = False, config: Config | None = None
) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr
                            and to a rotating file.
        verbose (bool): Lower the level to DEBUG.
        config (Config | None): Supplies the log rotation limits.
    """
    config = config or Config()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        try:
            LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=config.limits.max_log_size,
                backupCount=config.limits.log_backup_count,
            )
        except OSError as e:
            logger.warning(f"Could not open log file {LOG_FILE}: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def write_pid_file() -> None:
    try:
        PID_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))

        # Ensure cleanup on exit.
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def read_pid() -> int | None:
    try:
        return int(PID_FILE.read_text().strip())
    except (OSError, ValueError):
        return None


def is_daemon_running() -> bool:
    """Checks whether the process recorded in the PID file is alive."""
    pid = read_pid()
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def build_discovery(config: Config) -> RepositoryDiscovery:
    """Uses the configured manifest, else scans the base directory."""
    if config.repositories:
        return ManifestDiscovery(config.repositories)
    return LocalDiscovery(
        config.sync.base_dir,
        config.advanced.separate_org_dirs,
        timeout=config.sync.timeout,
    )


class Daemon:
    """Runs sync passes on a fixed interval until cancelled.

    Signal handlers only cancel the token. The loop notices the cancellation
    between passes (or between repositories inside a pass) and exits after
    the in-flight work has recorded its events.
    """

    def __init__(
        self,
        config: Config,
        store: EventStore,
        discovery: RepositoryDiscovery | None = None,
        orchestrator: ParallelSyncOrchestrator | None = None,
    ):
        self.config = config
        self.store = store
        self.discovery = discovery or build_discovery(config)
        self.orchestrator = orchestrator or ParallelSyncOrchestrator.from_config(
            config, store
        )

    def run_once(self, token: CancellationToken) -> SyncReport | None:
        """Runs a single pass followed by event retention cleanup.

        Returns:
            SyncReport | None: The report, or None if the pass was rejected
                because another one is still running.

        Raises:
            FatalSyncError: If the base directory is unusable.
            EventStoreError: If the event log is unusable.
        """
        repositories = self.discovery.discover_repositories()
        try:
            report = self.orchestrator.run_pass(repositories, token)
        except PassInProgressError as e:
            logger.warning(str(e))
            return None

        self.store.cleanup(datetime.timedelta(days=self.config.events.retention_days))
        return report

    def run(self, token: CancellationToken, once: bool = False) -> None:
        """The main loop.

        Args:
            token (CancellationToken): Stops the loop when cancelled.
            once (bool): Run one pass and return.
        """
        interval = self.config.daemon.interval
        logger.info(f"Daemon started (interval {interval}s)")
        while not token.cancelled:
            started = time.monotonic()
            self.run_once(token)
            if once:
                break
            remaining = max(0.0, interval - (time.monotonic() - started))
            if token.wait(remaining):
                break
        logger.info("Daemon stopped")


def install_signal_handlers(token: CancellationToken) -> None:
    def handler(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received signal {signum}, finishing current work")
        token.cancel()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


def main(interactive: bool = False, once: bool = False, verbose: bool = False) -> int:
    """The daemon entry point.

    Args:
        interactive (bool, optional): Log to stdout and skip the PID file.
        once (bool, optional): Run a single pass and exit.
        verbose (bool, optional): Enable debug logging.

    Returns:
        int: The process exit code.
    """
    config = Config.load()
    setup_logging(interactive, verbose, config)

    if not interactive:
        if is_daemon_running():
            logger.error(f"Daemon already running (PID {read_pid()})")
            return 1
        write_pid_file()

    token = CancellationToken()
    install_signal_handlers(token)

    store = EventStore(config.events.db_path)
    try:
        Daemon(config, store).run(token, once=once)
    except (FatalSyncError, EventStoreError) as e:
        logger.critical(f"FATAL: {e}")
        return 2
    finally:
        store.close()
    return 0


def cli_entry() -> None:
    """Console script entry point for `reposentry-daemon`."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
