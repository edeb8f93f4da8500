"""SQLite-backed notification store."""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .exceptions import (
    ConflictError,
    IntegrityError,
    NotFoundError,
    StoreUnavailableError,
)
from .models import EventKind, EventState, Notification, Window

logger = logging.getLogger(__name__)


_COLUMNS = (
    "id, event_time, event_type, raw_event_type, dir_path, file_path, "
    "old_file_path, file_size, action_ref, processed"
)


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        occurred_at=row["event_time"],
        kind=EventKind(row["event_type"]),
        raw_kind=row["raw_event_type"] or "",
        directory=row["dir_path"] or "",
        path=row["file_path"],
        old_path=row["old_file_path"] or "",
        size=row["file_size"] or 0,
        action_ref=row["action_ref"] or None,
        state=EventState(row["processed"]),
    )


def _validate(notification: Notification) -> Notification:
    """Check structural completeness of a notification before insertion."""
    if notification.occurred_at is None:
        raise IntegrityError("occurred_at is required")
    try:
        occurred_at = float(notification.occurred_at)
    except (TypeError, ValueError):
        raise IntegrityError(f"occurred_at must be a timestamp: {notification.occurred_at!r}")

    kind = notification.kind
    if not isinstance(kind, EventKind):
        try:
            kind = EventKind(kind)
        except ValueError:
            raise IntegrityError(f"unknown event kind: {kind!r}")

    if not notification.path or not isinstance(notification.path, str):
        raise IntegrityError("path is required")

    size = notification.size or 0
    if not isinstance(size, int) or size < 0:
        raise IntegrityError(f"size must be a non-negative integer: {size!r}")

    notification.occurred_at = occurred_at
    notification.kind = kind
    notification.size = size
    return notification


class NotificationStore:
    """
    SQLite-backed, append-only store of file system notifications.

    Features:
    - WAL journal so readers never see a half-written row
    - One-way state transitions guarded by conditional updates
    - Atomic DELETE+CREATE to MOVE conversion
    - Thread-safe operations with one connection per thread
    """

    def __init__(self, db_path: Path):
        """
        Open (or create) the notification store.

        Args:
            db_path: Path to the SQLite database file

        Raises:
            StoreUnavailableError: If the database cannot be opened
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False

        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if self._closed:
            raise StoreUnavailableError("Store is closed")

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    check_same_thread=False,
                    isolation_level=None,  # Autocommit mode, explicit BEGIN/COMMIT
                    timeout=10.0,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Cannot open store {self.db_path}: {e}") from e
            self._local.conn = conn
            self._connections.append(conn)
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_time REAL NOT NULL,
                    event_type TEXT NOT NULL,
                    raw_event_type TEXT,
                    dir_path TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    old_file_path TEXT,
                    file_size INTEGER DEFAULT 0,
                    action_ref TEXT,
                    processed INTEGER DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_pending
                ON events(processed, event_time, id)
            """)

    @contextmanager
    def _transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside a single transaction.

        Commits on success and rolls back on any exception. Driver errors are
        surfaced as StoreUnavailableError (or IntegrityError for constraint
        violations); StoreErrors raised by the block propagate unchanged.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Cannot begin transaction: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                if isinstance(e, sqlite3.IntegrityError):
                    raise IntegrityError(str(e)) from e
                if isinstance(e, sqlite3.Error):
                    raise StoreUnavailableError(str(e)) from e
                raise

    def insert(self, notification: Notification) -> int:
        """
        Append a notification as a new PENDING row.

        Args:
            notification: Notification to persist; its ``id`` and ``state``
                are ignored and assigned by the store

        Returns:
            The ID assigned to the notification

        Raises:
            IntegrityError: If required fields are missing or invalid
            StoreUnavailableError: If the store cannot be written
        """
        n = _validate(notification)

        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO events (event_time, event_type, raw_event_type, dir_path, file_path, "
                "old_file_path, file_size, action_ref, processed) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    n.occurred_at,
                    n.kind.value,
                    n.raw_kind,
                    n.directory or "",
                    n.path,
                    n.old_path or "",
                    n.size,
                    n.action_ref,
                    int(EventState.PENDING),
                ),
            )
            new_id = cursor.lastrowid

        n.id = new_id
        n.state = EventState.PENDING
        logger.debug(f"Inserted notification id={new_id} kind={n.kind.value} path={n.path}")
        return new_id

    def get(self, notification_id: int) -> Notification:
        """
        Read a notification by ID.

        Raises:
            NotFoundError: If no such notification exists
        """
        with self._transaction(immediate=False) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM events WHERE id = ?", (notification_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return _row_to_notification(row)

    def select_window(self, now: float, window: float) -> Window:
        """
        Select the next slice of pending notifications to coalesce.

        Only notifications older than ``now - 2 * window`` are eligible, so a
        notification is never evaluated before its partner could have been
        written. The slice starts at the earliest eligible notification
        (``tmin``) and spans ``2 * window`` so that candidates in the first
        half can find partners in the second half.

        Args:
            now: Current Unix timestamp
            window: Coalescing window W in seconds

        Returns:
            A Window ordered by ``(occurred_at, id)``; empty if nothing is due
        """
        cutoff = now - 2 * window

        with self._transaction(immediate=False) as conn:
            tmin = conn.execute(
                "SELECT MIN(event_time) FROM events WHERE processed = 0 AND event_time <= ?",
                (cutoff,),
            ).fetchone()[0]
            if tmin is None:
                return Window()

            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM events "
                "WHERE processed = 0 AND event_time >= ? AND event_time <= ? "
                "ORDER BY event_time ASC, id ASC",
                (tmin, tmin + 2 * window),
            ).fetchall()

        return Window(tmin=tmin, notifications=[_row_to_notification(r) for r in rows])

    def _set_state(self, conn: sqlite3.Connection, notification_id: int, state: EventState) -> None:
        """Move a PENDING row to a terminal state within the caller's transaction."""
        cursor = conn.execute(
            "UPDATE events SET processed = ? WHERE id = ? AND processed = ?",
            (int(state), notification_id, int(EventState.PENDING)),
        )
        if cursor.rowcount == 0:
            row = conn.execute(
                "SELECT processed FROM events WHERE id = ?", (notification_id,)
            ).fetchone()
            if row is None:
                raise ConflictError(f"Notification {notification_id} does not exist")
            raise ConflictError(
                f"Notification {notification_id} is not pending "
                f"(state={EventState(row['processed']).name})"
            )

    def mark_processed(self, notification_id: int) -> None:
        """
        Mark a PENDING notification as PROCESSED.

        Raises:
            ConflictError: If the row is missing or already terminal
        """
        with self._transaction() as conn:
            self._set_state(conn, notification_id, EventState.PROCESSED)
        logger.debug(f"Marked processed id={notification_id}")

    def mark_skipped(self, notification_id: int) -> None:
        """
        Mark a PENDING notification as SKIPPED.

        Raises:
            ConflictError: If the row is missing or already terminal
        """
        with self._transaction() as conn:
            self._set_state(conn, notification_id, EventState.SKIPPED)
        logger.debug(f"Marked skipped id={notification_id}")

    def convert_delete_to_move(
        self,
        delete_id: int,
        create_id: int,
        old_path: str,
        new_path: str,
    ) -> None:
        """
        Merge a DELETE and its matching CREATE into a single MOVE.

        Rewrites the DELETE row into a MOVE from ``old_path`` to ``new_path``
        and marks the CREATE row SKIPPED. Both updates commit together or not
        at all; on failure both rows are left untouched and PENDING.

        Args:
            delete_id: ID of the pending DELETE notification
            create_id: ID of the pending CREATE notification
            old_path: Path the file was removed from
            new_path: Path the file appeared at

        Raises:
            ConflictError: If either row is missing, not pending, or the
                delete row is not a DELETE
            StoreUnavailableError: If the transaction cannot be completed
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE events SET event_type = ?, old_file_path = ?, file_path = ? "
                "WHERE id = ? AND processed = ? AND event_type = ?",
                (
                    EventKind.MOVE.value,
                    old_path,
                    new_path,
                    delete_id,
                    int(EventState.PENDING),
                    EventKind.DELETE.value,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError(f"Notification {delete_id} is not a pending DELETE")
            self._set_state(conn, create_id, EventState.SKIPPED)

        logger.debug(f"Converted delete id={delete_id} to MOVE {old_path} -> {new_path}, skipped create id={create_id}")

    def pending(self, limit: Optional[int] = None) -> List[Notification]:
        """
        Get all pending notifications ordered by ``(occurred_at, id)``.

        Args:
            limit: Maximum number of notifications to return

        Returns:
            List of pending notifications
        """
        query = f"SELECT {_COLUMNS} FROM events WHERE processed = ? ORDER BY event_time ASC, id ASC"
        params = [int(EventState.PENDING)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._transaction(immediate=False) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_notification(r) for r in rows]

    def counts(self) -> Dict[EventState, int]:
        """
        Get the number of notifications in each lifecycle state.

        Returns:
            Mapping of state to row count (every state present)
        """
        with self._transaction(immediate=False) as conn:
            rows = conn.execute(
                "SELECT processed, COUNT(*) AS n FROM events GROUP BY processed"
            ).fetchall()
        result = {state: 0 for state in EventState}
        for row in rows:
            result[EventState(row["processed"])] = row["n"]
        return result

    def close(self) -> None:
        """Close the store and release all connections."""
        if self._closed:
            return

        with self._lock:
            self._closed = True
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing store connection: {e}")
            self._connections.clear()
            self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

