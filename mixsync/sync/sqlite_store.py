"""Durable change store backed by SQLite.

Timestamps are stored as integer microseconds since the Unix epoch so range
scans compare times natively instead of comparing text.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

from .change import Change, format_timestamp, normalize_changes, parse_timestamp
from .store import ChangeStore, StoreError, StoreTimeoutError

logger = logging.getLogger(__name__)

SCHEMA = """
-- Append-only sync log; duplicates are stored as distinct rows
CREATE TABLE IF NOT EXISTS sync_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    field TEXT NOT NULL,
    value_hash TEXT NOT NULL,
    device_id TEXT NOT NULL,
    lamport_clock INTEGER NOT NULL,
    vector_clock TEXT NOT NULL,
    ts INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_changes_ts ON sync_changes(ts);
"""

_COLUMNS = (
    "entity_type, entity_id, field, value_hash, device_id, "
    "lamport_clock, vector_clock, ts"
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)

# VM instructions between deadline checks while a statement runs
_PROGRESS_INTERVAL = 1000


def _to_micros(dt: datetime) -> int:
    return (dt - _EPOCH) // _MICROSECOND


def _from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


class SQLiteChangeStore(ChangeStore):
    """Change log persisted in a SQLite table.

    The connection belongs to this instance. Overlapping calls take turns on
    an internal lock rather than sharing the connection.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.Lock()

    def connect(self) -> None:
        """Open the database and create the schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; append manages its own transaction
        conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.executescript(SCHEMA)
        except sqlite3.Error:
            conn.close()
            raise
        self._conn = conn

        logger.info(f"SQLiteChangeStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        with self._conn_lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _session(self, timeout: float | None) -> Iterator[sqlite3.Connection]:
        """Hold the connection for one operation, bounded by timeout.

        Backend failures surface as StoreError and roll back any open
        transaction.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._conn_lock.acquire(timeout=-1 if timeout is None else timeout):
            raise StoreTimeoutError("timed out waiting for the database connection")

        try:
            try:
                conn = self._ensure_connected()
            except (sqlite3.Error, OSError) as e:
                logger.error(f"Cannot open change database {self.db_path}: {e}")
                raise StoreError(str(e)) from e

            if deadline is not None:
                conn.set_progress_handler(
                    lambda: int(time.monotonic() >= deadline), _PROGRESS_INTERVAL
                )
            try:
                yield conn
            except BaseException as e:
                # Never leave a transaction open for the next caller
                conn.set_progress_handler(None, 0)
                if conn.in_transaction:
                    conn.rollback()
                if not isinstance(e, (sqlite3.Error, OverflowError, UnicodeEncodeError)):
                    raise
                if deadline is not None and time.monotonic() >= deadline:
                    raise StoreTimeoutError("database operation timed out") from e
                logger.error(f"Change store operation failed: {e}")
                raise StoreError(str(e)) from e
            finally:
                conn.set_progress_handler(None, 0)
        finally:
            self._conn_lock.release()

    def append(self, changes: list[Change], timeout: float | None = None) -> int:
        """Insert the batch in a single transaction.

        Either every change becomes visible or none does. The operation is
        not idempotent: resubmitting a batch stores the rows again.
        """
        if not changes:
            return 0

        rows = [
            (
                c.entity_type,
                c.entity_id,
                c.field,
                c.value_hash,
                c.device_id,
                c.lamport_clock,
                c.vector_clock,
                _to_micros(parse_timestamp(c.ts)),
            )
            for c in normalize_changes(changes)
        ]

        with self._session(timeout) as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.executemany(
                f"INSERT INTO sync_changes ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            conn.execute("COMMIT")

        logger.debug(f"Appended {len(rows)} changes")
        return len(rows)

    def since(self, cursor: str = "", timeout: float | None = None) -> list[Change]:
        """Get changes ordered by ts, ties broken by arrival."""
        query = f"SELECT {_COLUMNS} FROM sync_changes ORDER BY ts, id"
        params: tuple = ()

        if cursor:
            start = parse_timestamp(cursor)
            if start is None:
                logger.debug(f"Unparsable cursor {cursor!r}, returning full log")
            else:
                query = (
                    f"SELECT {_COLUMNS} FROM sync_changes "
                    "WHERE ts >= ? ORDER BY ts, id"
                )
                params = (_to_micros(start),)

        with self._session(timeout) as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            Change(
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                field=row["field"],
                value_hash=row["value_hash"],
                device_id=row["device_id"],
                lamport_clock=row["lamport_clock"],
                vector_clock=row["vector_clock"],
                ts=format_timestamp(_from_micros(row["ts"])),
            )
            for row in rows
        ]

    def count(self, timeout: float | None = None) -> int:
        with self._session(timeout) as conn:
            return conn.execute("SELECT COUNT(*) FROM sync_changes").fetchone()[0]
