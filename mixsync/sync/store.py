"""Change store contract and the process-local in-memory implementation."""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator

from .change import Change, normalize_changes, parse_timestamp

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A change store failed to complete an operation."""


class StoreTimeoutError(StoreError):
    """The caller's deadline expired before the operation completed."""


class ChangeStore(ABC):
    """Append-only, ordered log of Change records.

    Every operation accepts a timeout in seconds (None waits indefinitely).
    When it expires the operation raises StoreTimeoutError instead of
    returning partial data.
    """

    @abstractmethod
    def append(self, changes: list[Change], timeout: float | None = None) -> int:
        """Normalize timestamps and append changes in input order.

        Returns:
            Number of changes appended.
        """
        pass

    @abstractmethod
    def since(self, cursor: str = "", timeout: float | None = None) -> list[Change]:
        """Get changes with ts at or after the cursor.

        An empty or unparsable cursor returns the whole log.
        """
        pass

    @abstractmethod
    def count(self, timeout: float | None = None) -> int:
        """Total number of changes in the log."""
        pass

    def close(self) -> None:
        """Release any resources held by the store."""


class ReadWriteLock:
    """Lock allowing concurrent readers or a single writer.

    Waiting writers block new readers so a steady stream of pulls cannot
    starve a push.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self, timeout: float | None = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(
                lambda: not self._writer and not self._writers_waiting, timeout
            ):
                return False
            self._readers += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float | None = None) -> bool:
        with self._cond:
            self._writers_waiting += 1
            try:
                acquired = self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0, timeout
                )
                if acquired:
                    self._writer = True
                return acquired
            finally:
                self._writers_waiting -= 1
                if not self._writer:
                    # Readers held back by this writer may proceed
                    self._cond.notify_all()

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class MemoryChangeStore(ChangeStore):
    """Change log held in process memory.

    Used when no database is configured. Iteration order is arrival order,
    including among records that share a timestamp.
    """

    def __init__(self) -> None:
        self._changes: list[Change] = []
        self._lock = ReadWriteLock()

    @contextmanager
    def _reading(self, timeout: float | None) -> Iterator[None]:
        if not self._lock.acquire_read(timeout):
            raise StoreTimeoutError("timed out waiting to read the change log")
        try:
            yield
        finally:
            self._lock.release_read()

    @contextmanager
    def _writing(self, timeout: float | None) -> Iterator[None]:
        if not self._lock.acquire_write(timeout):
            raise StoreTimeoutError("timed out waiting to write the change log")
        try:
            yield
        finally:
            self._lock.release_write()

    def append(self, changes: list[Change], timeout: float | None = None) -> int:
        normalized = normalize_changes(changes)
        with self._writing(timeout):
            self._changes.extend(normalized)
        logger.debug(f"Appended {len(normalized)} changes")
        return len(normalized)

    def since(self, cursor: str = "", timeout: float | None = None) -> list[Change]:
        with self._reading(timeout):
            if not cursor:
                return list(self._changes)

            start = parse_timestamp(cursor)
            if start is None:
                logger.debug(f"Unparsable cursor {cursor!r}, returning full log")
                return list(self._changes)

            result = []
            for change in self._changes:
                ts = parse_timestamp(change.ts)
                # A record we cannot place in time is assumed relevant
                if ts is None or ts >= start:
                    result.append(change)
            return result

    def count(self, timeout: float | None = None) -> int:
        with self._reading(timeout):
            return len(self._changes)


def open_store(database_path: str = "") -> ChangeStore:
    """Select the store backing the service for this process.

    Args:
        database_path: SQLite database path. Empty selects the in-memory store.

    Returns:
        A ready-to-use ChangeStore.
    """
    if not database_path:
        logger.info("No database configured, using in-memory change store")
        return MemoryChangeStore()

    from .sqlite_store import SQLiteChangeStore

    store = SQLiteChangeStore(database_path)
    store.connect()
    return store
