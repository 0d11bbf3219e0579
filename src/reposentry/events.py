"""
SQLite-backed event log.

Every sync pass appends exactly one event per repository. Events are never
rewritten: the only mutation after insert is setting the acknowledged flag,
and cleanup only deletes whole rows. Passes are recorded alongside so a
crash mid-pass can be detected on the next start.

Uses stdlib sqlite3 with no ORM.
"""

import datetime
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .constants import APP_NAME
from .errors import EventStoreError
from .models import EventType, Severity, SyncEvent, SyncReport, utcnow

logger = logging.getLogger(APP_NAME)

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    repository TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    detail TEXT NOT NULL DEFAULT '',
    acknowledged INTEGER NOT NULL DEFAULT 0,
    pass_id INTEGER REFERENCES passes(id)
);
CREATE INDEX IF NOT EXISTS idx_events_repository ON events(repository, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);

CREATE TABLE IF NOT EXISTS passes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    repositories INTEGER NOT NULL DEFAULT 0,
    summary TEXT
);
"""


def format_timestamp(value: datetime.datetime) -> str:
    """Serializes a datetime as sortable ISO-8601 UTC text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(value)


@dataclass
class EventStats:
    """Aggregate counts over the whole log."""

    total: int = 0
    unacknowledged: int = 0
    by_type: dict[EventType, int] = field(default_factory=dict)
    by_severity: dict[Severity, int] = field(default_factory=dict)
    oldest: datetime.datetime | None = None
    newest: datetime.datetime | None = None
    passes: int = 0
    success_ratio: float = 0.0


@dataclass
class EventStatus:
    """What needs attention: the latest event per repository plus open issues.

    Attributes:
        latest (list[SyncEvent]): The most recent event of each repository.
        unacknowledged (dict[Severity, int]): Open events per severity.
    """

    latest: list[SyncEvent] = field(default_factory=list)
    unacknowledged: dict[Severity, int] = field(default_factory=dict)

    @property
    def needs_attention(self) -> bool:
        return any(
            self.unacknowledged.get(s, 0) for s in (Severity.WARNING, Severity.ERROR)
        )


class EventStore:
    """
    Durable, append-only event log.

    One connection is shared by all worker threads and every statement runs
    under a lock, so concurrent appends are serialized.

    Usage:
        store = EventStore(Path("state.db"))
        pass_id = store.begin_pass(repositories=12)
        store.append(SyncEvent("octo/alpha", EventType.PULLED, pass_id=pass_id))
        store.finish_pass(pass_id, "completed", report)
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection, creating the schema on first use."""
        if self._connection is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA foreign_keys = ON")
                conn.executescript(SCHEMA)
                interrupted = conn.execute(
                    "UPDATE passes SET status = 'interrupted', finished_at = ? "
                    "WHERE status = 'running'",
                    (format_timestamp(utcnow()),),
                ).rowcount
                conn.commit()
            except (sqlite3.Error, OSError) as e:
                raise EventStoreError(f"Cannot open event store {self.db_path}: {e}") from e
            if interrupted:
                logger.warning(f"Marked {interrupted} unfinished pass(es) as interrupted")
            self._connection = conn
            logger.debug(f"Event store opened: {self.db_path}")
        return self._connection

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                conn = self._get_connection()
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor
            except sqlite3.Error as e:
                raise EventStoreError(f"Event store failure: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._get_connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise EventStoreError(f"Event store failure: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- Events ---

    def append(self, event: SyncEvent) -> int:
        """Appends an event and returns its id.

        Raises:
            EventStoreError: If the database cannot be written.
        """
        cursor = self._execute(
            "INSERT INTO events "
            "(timestamp, repository, event_type, severity, detail, acknowledged, pass_id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                format_timestamp(event.timestamp),
                event.repository,
                event.event_type.value,
                event.severity.value,
                event.detail,
                int(event.acknowledged),
                event.pass_id,
            ),
        )
        event.id = cursor.lastrowid
        return event.id

    def list(
        self,
        repository: str | None = None,
        event_type: EventType | None = None,
        since: datetime.datetime | None = None,
        acknowledged: bool | None = None,
        limit: int | None = None,
    ) -> list[SyncEvent]:
        """Queries events, newest first.

        Args:
            repository (str | None): Only events of this repository.
            event_type (EventType | None): Only events of this type.
            since (datetime.datetime | None): Only events at or after this time.
            acknowledged (bool | None): Filter on the acknowledged flag.
            limit (int | None): Maximum number of events returned.

        Returns:
            list[SyncEvent]: The matching events.
        """
        clauses, params = [], []
        if repository is not None:
            clauses.append("repository = ?")
            params.append(repository)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type.value)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(format_timestamp(since))
        if acknowledged is not None:
            clauses.append("acknowledged = ?")
            params.append(int(acknowledged))

        sql = "SELECT * FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_event(row) for row in self._query(sql, tuple(params))]

    def get(self, event_id: int) -> SyncEvent | None:
        rows = self._query("SELECT * FROM events WHERE id = ?", (event_id,))
        return self._row_to_event(rows[0]) if rows else None

    def acknowledge(self, event_id: int) -> bool:
        """Marks one event as acknowledged.

        Returns:
            bool: False if no such event exists or it was already acknowledged.
        """
        cursor = self._execute(
            "UPDATE events SET acknowledged = 1 WHERE id = ? AND acknowledged = 0",
            (event_id,),
        )
        return cursor.rowcount > 0

    def acknowledge_all(self, repository: str | None = None) -> int:
        if repository is None:
            cursor = self._execute("UPDATE events SET acknowledged = 1 WHERE acknowledged = 0")
        else:
            cursor = self._execute(
                "UPDATE events SET acknowledged = 1 WHERE acknowledged = 0 AND repository = ?",
                (repository,),
            )
        return cursor.rowcount

    def stats(self) -> EventStats:
        stats = EventStats()
        summary = self._query(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(acknowledged = 0), 0) AS unacked, "
            "MIN(timestamp) AS oldest, MAX(timestamp) AS newest FROM events"
        )[0]
        stats.total = summary["total"]
        stats.unacknowledged = summary["unacked"]
        stats.oldest = parse_timestamp(summary["oldest"]) if summary["oldest"] else None
        stats.newest = parse_timestamp(summary["newest"]) if summary["newest"] else None

        for row in self._query(
            "SELECT event_type, COUNT(*) AS n FROM events GROUP BY event_type"
        ):
            stats.by_type[EventType(row["event_type"])] = row["n"]
        for row in self._query(
            "SELECT severity, COUNT(*) AS n FROM events GROUP BY severity"
        ):
            stats.by_severity[Severity(row["severity"])] = row["n"]
        stats.passes = self._query("SELECT COUNT(*) AS n FROM passes")[0]["n"]
        if stats.total:
            successes = sum(n for t, n in stats.by_type.items() if t.is_success)
            stats.success_ratio = successes / stats.total
        return stats

    def status(self) -> EventStatus:
        rows = self._query(
            "SELECT e.* FROM events e "
            "JOIN (SELECT repository, MAX(id) AS id FROM events GROUP BY repository) latest "
            "ON e.id = latest.id ORDER BY e.repository"
        )
        status = EventStatus(latest=[self._row_to_event(row) for row in rows])
        for row in self._query(
            "SELECT severity, COUNT(*) AS n FROM events WHERE acknowledged = 0 GROUP BY severity"
        ):
            status.unacknowledged[Severity(row["severity"])] = row["n"]
        return status

    def cleanup(
        self, older_than: datetime.timedelta, include_unacknowledged: bool = False
    ) -> int:
        """Deletes old events.

        Args:
            older_than (datetime.timedelta): Events older than this are eligible.
            include_unacknowledged (bool): Also delete events nobody has
                acknowledged yet.

        Returns:
            int: The number of deleted events.
        """
        cutoff = format_timestamp(utcnow() - older_than)
        sql = "DELETE FROM events WHERE timestamp < ?"
        if not include_unacknowledged:
            sql += " AND acknowledged = 1"
        deleted = self._execute(sql, (cutoff,)).rowcount
        if deleted:
            logger.info(f"Removed {deleted} event(s) older than {older_than.days} day(s)")
        return deleted

    # --- Passes ---

    def begin_pass(self, repositories: int = 0) -> int:
        cursor = self._execute(
            "INSERT INTO passes (started_at, status, repositories) VALUES (?, 'running', ?)",
            (format_timestamp(utcnow()), repositories),
        )
        return cursor.lastrowid

    def finish_pass(
        self, pass_id: int, status: str, report: SyncReport | None = None
    ) -> None:
        self._execute(
            "UPDATE passes SET finished_at = ?, status = ?, summary = ? WHERE id = ?",
            (
                format_timestamp(utcnow()),
                status,
                report.summary() if report else None,
                pass_id,
            ),
        )

    def last_pass(self) -> sqlite3.Row | None:
        rows = self._query("SELECT * FROM passes ORDER BY id DESC LIMIT 1")
        return rows[0] if rows else None

    def count_passes(self, status: str) -> int:
        return self._query("SELECT COUNT(*) AS n FROM passes WHERE status = ?", (status,))[0]["n"]

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> SyncEvent:
        return SyncEvent(
            id=row["id"],
            repository=row["repository"],
            event_type=EventType(row["event_type"]),
            detail=row["detail"],
            timestamp=parse_timestamp(row["timestamp"]),
            acknowledged=bool(row["acknowledged"]),
            pass_id=row["pass_id"],
        )
