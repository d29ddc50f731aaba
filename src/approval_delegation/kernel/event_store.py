"""
SQLite Event Store - Append-only event log with idempotency

The event store is the durable Delegation Store. It provides:
- Append-only semantics for grant lifecycle events and the proxy ledger
- Idempotency via command_id (same command = same events)
- Per-grant compare-and-set via stream versioning
- A global append position so several engine instances can catch up

Fun fact: The append-only log pattern is one of the oldest database
techniques, and auditors have relied on it for centuries - a ledger line is
corrected with a new line, never erased.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Protocol

from approval_delegation.kernel.errors import (
    CommandIdempotencyViolation,
    EventStoreError,
    StreamVersionConflict,
)
from approval_delegation.kernel.events import Event
from approval_delegation.kernel.logging import get_logger
from approval_delegation.kernel.metrics import (
    events_appended_total,
    events_loaded_total,
    stream_version_conflicts_total,
)
from approval_delegation.kernel.retry import retry_on_sqlite_lock

logger = get_logger(__name__)

StreamAppend = tuple[str, int, list[Event]]

_COLUMNS = """
    position, event_id, stream_id, stream_type, version,
    command_id, event_type, occurred_at, actor_id, payload_json
"""


class EventStore(Protocol):
    """
    Persistence contract the engine depends on

    Any backend offering these operations with per-stream compare-and-set
    can replace SQLite without touching the delegation logic.
    """

    def append(self, stream_id: str, expected_version: int, events: list[Event]) -> list[Event]:
        ...

    def append_many(self, appends: list[StreamAppend]) -> list[Event]:
        ...

    def load_stream(self, stream_id: str) -> list[Event]:
        ...

    def load_all_events(self, after_position: int = 0) -> list[Event]:
        ...

    def get_stream_version(self, stream_id: str) -> int:
        ...

    def delete_stream(self, stream_id: str) -> int:
        ...


class SQLiteEventStore:
    """
    SQLite-based event store with append-only semantics

    This implementation uses SQLite with WAL (Write-Ahead Logging) mode
    for crash safety and good concurrent read performance. Writes take an
    IMMEDIATE transaction so the version check and the insert are atomic.

    Schema:
    - events table: append-only event log
    - Unique constraints: (stream_id, version), event_id
    - Indices: stream_id, event_type, command_id, occurred_at
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize event store with SQLite database

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        """Create tables and indices if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    position INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    stream_id TEXT NOT NULL,
                    stream_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    command_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    actor_id TEXT,
                    payload_json TEXT NOT NULL,

                    UNIQUE(stream_id, version)
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_stream "
                "ON events(stream_id, version)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_time ON events(occurred_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_command ON events(command_id)")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database connections

        Connections run in autocommit mode; writers open explicit
        transactions themselves.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def append(
        self,
        stream_id: str,
        expected_version: int,
        events: list[Event],
    ) -> list[Event]:
        """
        Append events to a single stream with optimistic locking

        Args:
            stream_id: Aggregate identifier
            expected_version: Expected current stream version
            events: Events to append (must have sequential versions)

        Returns:
            The appended events (or the earlier ones if the command already ran)

        Raises:
            StreamVersionConflict: If stream version doesn't match expected
            EventStoreError: On other database errors
        """
        return self.append_many([(stream_id, expected_version, events)])

    @retry_on_sqlite_lock()
    def append_many(self, appends: list[StreamAppend]) -> list[Event]:
        """
        Append events to several streams in one transaction

        Used when one command touches more than one aggregate, e.g. a proxy
        approval writes a ledger record and an audit event on the grant.
        Either every stream is appended or none is.

        Idempotency is checked per command: if any event of the batch's
        command(s) is already stored, nothing is written and the stored
        events are returned instead.
        """
        appends = [(sid, ver, evs) for sid, ver, evs in appends if evs]
        if not appends:
            return []

        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                result: list[Event] = []
                written: list[Event] = []

                command_ids = sorted({e.command_id for _, _, evs in appends for e in evs})
                existing = self._events_for_commands(conn, command_ids)
                if existing:
                    raise CommandIdempotencyViolation(existing[0].command_id)

                for stream_id, expected_version, events in appends:
                    current_version = self._get_stream_version(conn, stream_id)
                    if current_version != expected_version:
                        raise StreamVersionConflict(
                            stream_id, expected_version, current_version
                        )

                    for event in events:
                        cursor = conn.execute(
                            """
                            INSERT INTO events (
                                event_id, stream_id, stream_type, version,
                                command_id, event_type, occurred_at, actor_id, payload_json
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            (
                                event.event_id,
                                event.stream_id,
                                event.stream_type,
                                event.version,
                                event.command_id,
                                event.event_type,
                                event.occurred_at.isoformat(),
                                event.actor_id,
                                json.dumps(event.payload),
                            ),
                        )
                        stored = event.model_copy(update={"position": cursor.lastrowid})
                        result.append(stored)
                        written.append(stored)

                conn.execute("COMMIT")

            except CommandIdempotencyViolation as e:
                conn.execute("ROLLBACK")
                logger.info(
                    "Command already processed, returning stored events",
                    command_id=e.command_id,
                    event_count=len(existing),
                )
                return existing

            except StreamVersionConflict as e:
                conn.execute("ROLLBACK")
                stream_type = appends[0][2][0].stream_type
                stream_version_conflicts_total.labels(stream_type=stream_type).inc()
                logger.warning(
                    "Stream version conflict",
                    stream_id=e.stream_id,
                    expected_version=e.expected_version,
                    actual_version=e.actual_version,
                )
                raise

            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                error_msg = str(e).lower()
                if "stream_id" in error_msg and "version" in error_msg:
                    stream_id, expected_version, _ = appends[0]
                    current = self.get_stream_version(stream_id)
                    raise StreamVersionConflict(stream_id, expected_version, current) from e
                raise EventStoreError(f"Failed to append events: {e}") from e

            except sqlite3.OperationalError:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

            except Exception as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise EventStoreError(f"Unexpected error appending events: {e}") from e

        for event in written:
            events_appended_total.labels(
                stream_type=event.stream_type, event_type=event.event_type
            ).inc()

        return result

    def load_stream(self, stream_id: str) -> list[Event]:
        """
        Load all events for a stream in version order

        Args:
            stream_id: Aggregate identifier

        Returns:
            List of events in version order (empty if stream doesn't exist)
        """
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT {_COLUMNS} FROM events WHERE stream_id = ? ORDER BY version ASC",
                (stream_id,),
            )
            events = [self._row_to_event(row) for row in cursor.fetchall()]

        if events:
            events_loaded_total.labels(stream_type=events[0].stream_type).inc(len(events))
        return events

    def load_all_events(self, after_position: int = 0) -> list[Event]:
        """
        Load events in append order (for projection rebuilding and catch-up)

        Args:
            after_position: Only return events appended after this position

        Returns:
            List of events in append order
        """
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT {_COLUMNS} FROM events WHERE position > ? ORDER BY position ASC",
                (after_position,),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def query_events(
        self,
        *,
        stream_type: str | None = None,
        event_type: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """
        Query events by various criteria

        Args:
            stream_type: Filter by stream type (e.g., "delegation")
            event_type: Filter by event type (e.g., "DelegationExpired")
            from_time: Events at or after this time
            to_time: Events at or before this time
            limit: Maximum number of events to return

        Returns:
            List of matching events in append order
        """
        conditions = []
        params: list[object] = []

        if stream_type:
            conditions.append("stream_type = ?")
            params.append(stream_type)

        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)

        if from_time:
            conditions.append("occurred_at >= ?")
            params.append(from_time.isoformat())

        if to_time:
            conditions.append("occurred_at <= ?")
            params.append(to_time.isoformat())

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        query = f"SELECT {_COLUMNS} FROM events WHERE {where_clause} ORDER BY position ASC"

        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def get_stream_version(self, stream_id: str) -> int:
        """
        Get current version of a stream

        Returns:
            Current stream version (0 if stream doesn't exist)
        """
        with self._connect() as conn:
            return self._get_stream_version(conn, stream_id)

    @retry_on_sqlite_lock()
    def delete_stream(self, stream_id: str) -> int:
        """
        Physically remove a stream (hard delete of a grant and its audit trail)

        Ledger streams are never passed here.

        Returns:
            Number of events removed
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("DELETE FROM events WHERE stream_id = ?", (stream_id,))
            conn.execute("COMMIT")
            return cursor.rowcount

    def _get_stream_version(self, conn: sqlite3.Connection, stream_id: str) -> int:
        """Internal helper to get stream version within a connection"""
        cursor = conn.execute(
            "SELECT MAX(version) FROM events WHERE stream_id = ?",
            (stream_id,),
        )
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def _events_for_commands(
        self, conn: sqlite3.Connection, command_ids: list[str]
    ) -> list[Event]:
        """Events already written by these commands (for idempotency checking)"""
        placeholders = ", ".join("?" for _ in command_ids)
        cursor = conn.execute(
            f"""
            SELECT {_COLUMNS} FROM events
            WHERE command_id IN ({placeholders})
            ORDER BY position ASC
            """,
            command_ids,
        )
        return [self._row_to_event(row) for row in cursor.fetchall()]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert SQLite row to Event object"""
        return Event(
            event_id=row["event_id"],
            stream_id=row["stream_id"],
            stream_type=row["stream_type"],
            version=row["version"],
            command_id=row["command_id"],
            event_type=row["event_type"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            actor_id=row["actor_id"],
            payload=json.loads(row["payload_json"]),
            position=row["position"],
        )

    def count_events(self) -> int:
        """Get total number of events in store"""
        with self._connect() as conn:
            cursor = conn.execute("SELECT COUNT(*) FROM events")
            return cursor.fetchone()[0]

    def count_streams(self) -> int:
        """Get total number of distinct streams"""
        with self._connect() as conn:
            cursor = conn.execute("SELECT COUNT(DISTINCT stream_id) FROM events")
            return cursor.fetchone()[0]
