"""Change-log synchronization for media-library replicas.

Provides the append-only change log (in-memory and SQLite-backed), the
record format exchanged between devices, and a client for pushing and
pulling changes.
"""

from .change import Change, InvalidChangeError, normalize_changes, normalize_timestamp
from .clock import DeviceClock, compare_vectors, hash_value
from .sqlite_store import SQLiteChangeStore
from .store import (
    ChangeStore,
    MemoryChangeStore,
    StoreError,
    StoreTimeoutError,
    open_store,
)
from .sync_client import SyncClient

__all__ = [
    "Change",
    "ChangeStore",
    "DeviceClock",
    "InvalidChangeError",
    "MemoryChangeStore",
    "SQLiteChangeStore",
    "StoreError",
    "StoreTimeoutError",
    "SyncClient",
    "compare_vectors",
    "hash_value",
    "normalize_changes",
    "normalize_timestamp",
    "open_store",
]
