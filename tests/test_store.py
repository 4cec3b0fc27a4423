"""Tests for the in-memory and SQLite change stores."""

import threading

import pytest

from mixsync.sync.change import Change, parse_timestamp
from mixsync.sync.sqlite_store import SQLiteChangeStore
from mixsync.sync.store import (
    MemoryChangeStore,
    ReadWriteLock,
    StoreError,
    StoreTimeoutError,
    open_store,
)


def make_change(entity_id: str = "t1", ts: str = "", lamport_clock: int = 1, **overrides) -> Change:
    data = {
        "entity_type": "track",
        "entity_id": entity_id,
        "field": "title",
        "value_hash": f"hash-{entity_id}",
        "device_id": "d1",
        "lamport_clock": lamport_clock,
        "vector_clock": "{}",
        "ts": ts,
    }
    data.update(overrides)
    return Change(**data)


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Create an empty change store of each kind."""
    if request.param == "memory":
        store = MemoryChangeStore()
    else:
        store = SQLiteChangeStore(":memory:")
        store.connect()
    yield store
    store.close()


class TestAppend:
    """Tests shared by both store implementations."""

    def test_append_returns_count(self, store):
        """Test append reports the number of records in the batch."""
        batch = [make_change(f"t{i}", ts="2024-01-01T00:00:00Z") for i in range(5)]

        assert store.append(batch) == 5
        assert store.count() == 5

    def test_append_empty_batch(self, store):
        """Test an empty batch appends nothing."""
        assert store.append([]) == 0
        assert store.since("") == []

    def test_full_pull_matches_batch(self, store):
        """Test pulling with an empty cursor returns the batch unchanged."""
        batch = [
            make_change("t1", ts="2024-01-01T00:00:00Z", lamport_clock=1),
            make_change("t2", ts="2024-01-01T00:00:01Z", lamport_clock=2,
                        vector_clock='{"d1":2}'),
            make_change("t3", ts="2024-01-01T00:00:02Z", lamport_clock=3),
        ]
        store.append(batch)

        assert store.since("") == batch

    def test_empty_ts_normalized_to_now(self, store):
        """Test a missing timestamp is replaced with the current time."""
        store.append([make_change(ts="")])

        [stored] = store.since("")

        assert parse_timestamp(stored.ts) is not None
        assert stored.ts.endswith("Z")
        assert stored.entity_id == "t1"
        assert stored.value_hash == "hash-t1"
        assert stored.vector_clock == "{}"

    def test_spaced_ts_normalized(self, store):
        """Test the spaced timestamp format is stored in the fixed profile."""
        store.append([make_change(ts="2024-03-04 05:06:07")])

        [stored] = store.since("")

        assert stored.ts == "2024-03-04T05:06:07Z"

    def test_duplicates_are_kept(self, store):
        """Test resubmitting a change stores it again."""
        change = make_change(ts="2024-01-01T00:00:00Z")
        store.append([change])
        store.append([change])

        assert store.since("") == [change, change]

    def test_readers_never_see_partial_batch(self, store):
        """Test concurrent readers only observe whole batches."""
        batches = 20
        batch_size = 100
        done = threading.Event()
        observed: list[int] = []
        errors: list[Exception] = []

        def writer() -> None:
            try:
                for b in range(batches):
                    store.append([
                        make_change(f"b{b}-{i}", ts="2024-01-01T00:00:00Z")
                        for i in range(batch_size)
                    ])
            except Exception as e:
                errors.append(e)
            finally:
                done.set()

        def reader() -> None:
            try:
                while not done.is_set():
                    observed.append(len(store.since("")))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        threads.append(threading.Thread(target=writer))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert all(n % batch_size == 0 for n in observed)
        assert store.count() == batches * batch_size


class TestSince:
    """Tests for cursor-based retrieval."""

    def test_since_scenario(self, store):
        """Test the cursor selects records at or after it."""
        first = make_change("t1", ts="2024-01-01T00:00:00Z")
        second = make_change("t2", ts="2024-01-02T00:00:00Z")
        store.append([first, second])

        assert store.since("2024-01-01T12:00:00Z") == [second]

    def test_since_is_inclusive(self, store):
        """Test a record exactly at the cursor is returned."""
        change = make_change(ts="2024-01-01T00:00:00Z")
        store.append([change])

        assert store.since("2024-01-01T00:00:00Z") == [change]

    def test_monotonic_catch_up(self, store):
        """Test pulling from the last cursor of one batch yields the next."""
        b1 = [make_change(f"a{i}", ts=f"2024-01-01T00:00:0{i}Z") for i in range(3)]
        b2 = [make_change(f"b{i}", ts=f"2024-01-01T00:01:0{i}Z") for i in range(3)]
        store.append(b1)
        cursor = store.since("")[-1].ts
        store.append(b2)

        result = store.since(cursor)

        # The cursor is inclusive, so the last record of b1 comes back too
        assert result == [b1[-1]] + b2

    def test_catch_up_with_cursor_past_last_record(self, store):
        """Test a cursor just past the previous batch yields exactly the next one."""
        b1 = [make_change("a", ts="2024-01-01T00:00:00Z")]
        b2 = [make_change("b", ts="2024-01-01T00:00:05Z")]
        store.append(b1)
        store.append(b2)

        assert store.since("2024-01-01T00:00:01Z") == b2

    def test_unparsable_cursor_returns_full_log(self, store):
        """Test a garbage cursor fails open with the whole log."""
        batch = [
            make_change("t1", ts="2024-01-01T00:00:00Z"),
            make_change("t2", ts="2024-01-02T00:00:00Z"),
        ]
        store.append(batch)

        assert store.since("not-a-timestamp") == batch

    def test_cursor_with_offset(self, store):
        """Test a cursor with a UTC offset compares by instant."""
        early = make_change("t1", ts="2024-01-01T00:00:00Z")
        late = make_change("t2", ts="2024-01-01T02:00:00Z")
        store.append([early, late])

        assert store.since("2024-01-01T02:00:00+01:00") == [late]

    def test_cursor_round_trips(self, store):
        """Test a ts from one pull works as the next cursor."""
        store.append([make_change("t1", ts="2024-05-05 10:00:00")])
        cursor = store.since("")[0].ts

        assert len(store.since(cursor)) == 1

    def test_same_timestamp_keeps_append_order(self, store):
        """Test records sharing a timestamp come back in append order."""
        ts = "2024-01-01T00:00:00Z"
        batch = [make_change(f"t{i}", ts=ts, lamport_clock=i) for i in range(10)]
        store.append(batch[:5])
        store.append(batch[5:])

        assert store.since("") == batch
        assert store.since(ts) == batch

    def test_since_returns_copy(self, store):
        """Test callers cannot mutate the log through a pull result."""
        store.append([make_change(ts="2024-01-01T00:00:00Z")])

        result = store.since("")
        result.clear()

        assert store.count() == 1


class TestMemoryChangeStore:
    """Tests specific to the in-memory store."""

    def test_out_of_order_timestamps_keep_insertion_order(self):
        """Test retrieval is not re-sorted by timestamp."""
        store = MemoryChangeStore()
        late = make_change("t1", ts="2024-01-02T00:00:00Z")
        early = make_change("t2", ts="2024-01-01T00:00:00Z")
        store.append([late, early])

        assert store.since("") == [late, early]
        assert store.since("2024-01-01T00:00:00Z") == [late, early]

    def test_unparsable_stored_ts_is_included(self):
        """Test a record whose ts cannot be parsed is always returned."""
        store = MemoryChangeStore()
        store.append([make_change("t1", ts="2024-01-01T00:00:00Z")])
        # Bypass normalization to plant an unparsable record
        odd = make_change("t2", ts="garbage")
        store._changes.append(odd)

        assert store.since("2025-01-01T00:00:00Z") == [odd]

    def test_since_times_out_while_writer_holds_lock(self):
        """Test a reader gives up when a writer holds the lock past the deadline."""
        store = MemoryChangeStore()
        assert store._lock.acquire_write()
        try:
            with pytest.raises(StoreTimeoutError):
                store.since("", timeout=0.05)
        finally:
            store._lock.release_write()

        assert store.since("", timeout=0.05) == []

    def test_append_times_out_while_reader_holds_lock(self):
        """Test a writer gives up when a reader holds the lock past the deadline."""
        store = MemoryChangeStore()
        assert store._lock.acquire_read()
        try:
            with pytest.raises(StoreTimeoutError):
                store.append([make_change()], timeout=0.05)
        finally:
            store._lock.release_read()

        assert store.count() == 0

    def test_concurrent_appends_are_all_recorded(self):
        """Test appends from many threads are serialized without loss."""
        store = MemoryChangeStore()

        def worker(n: int) -> None:
            for i in range(50):
                store.append([make_change(f"w{n}-{i}", ts="2024-01-01T00:00:00Z")])

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count() == 400


class TestReadWriteLock:
    """Tests for the reader/writer lock."""

    def test_readers_share(self):
        """Test several readers can hold the lock at once."""
        lock = ReadWriteLock()

        assert lock.acquire_read(timeout=0)
        assert lock.acquire_read(timeout=0)
        assert not lock.acquire_write(timeout=0)

        lock.release_read()
        lock.release_read()
        assert lock.acquire_write(timeout=0)

    def test_writer_excludes_readers(self):
        """Test a held write lock blocks readers and writers."""
        lock = ReadWriteLock()
        assert lock.acquire_write(timeout=0)

        assert not lock.acquire_read(timeout=0)
        assert not lock.acquire_write(timeout=0)

        lock.release_write()
        assert lock.acquire_read(timeout=0)


class TestSQLiteChangeStore:
    """Tests specific to the SQLite store."""

    def test_connect_creates_table_and_index(self):
        """Test connect() creates the change table and its ts index."""
        store = SQLiteChangeStore(":memory:")
        store.connect()

        names = [
            row[0]
            for row in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'index')"
            )
        ]

        assert "sync_changes" in names
        assert "idx_sync_changes_ts" in names
        store.close()

    def test_ts_stored_as_integer(self):
        """Test timestamps are stored natively, not as text."""
        store = SQLiteChangeStore(":memory:")
        store.connect()
        store.append([make_change(ts="1970-01-01T00:00:01Z")])

        value, kind = store._conn.execute(
            "SELECT ts, typeof(ts) FROM sync_changes"
        ).fetchone()

        assert kind == "integer"
        assert value == 1_000_000
        store.close()

    def test_orders_by_timestamp(self):
        """Test rows come back in time order, ties in arrival order."""
        store = SQLiteChangeStore(":memory:")
        store.connect()
        late = make_change("t1", ts="2024-01-02T00:00:00Z")
        early_a = make_change("t2", ts="2024-01-01T00:00:00Z")
        early_b = make_change("t3", ts="2024-01-01T00:00:00Z")
        store.append([late, early_a, early_b])

        assert store.since("") == [early_a, early_b, late]
        store.close()

    def test_failed_batch_is_rolled_back(self):
        """Test a batch with one bad row leaves no rows behind."""
        store = SQLiteChangeStore(":memory:")
        store.connect()
        store.append([make_change("keep", ts="2024-01-01T00:00:00Z")])

        batch = [
            make_change("t1", ts="2024-01-02T00:00:00Z"),
            make_change("t2", ts="2024-01-02T00:00:00Z", lamport_clock=2**70),
        ]
        with pytest.raises(StoreError):
            store.append(batch)

        assert [c.entity_id for c in store.since("")] == ["keep"]
        # The store stays usable after a failed batch
        assert store.append([make_change("t3", ts="2024-01-03T00:00:00Z")]) == 1
        store.close()

    def test_unencodable_text_is_rolled_back(self):
        """Test a row with a lone surrogate fails cleanly and frees the connection."""
        store = SQLiteChangeStore(":memory:")
        store.connect()

        with pytest.raises(StoreError):
            store.append([
                make_change("ok", ts="2024-01-01T00:00:00Z"),
                make_change("t\ud800", ts="2024-01-01T00:00:00Z"),
            ])

        assert not store._conn.in_transaction
        assert store.append([make_change("t2", ts="2024-01-02T00:00:00Z")]) == 1
        assert [c.entity_id for c in store.since("")] == ["t2"]
        store.close()

    def test_unopenable_path_raises_store_error(self, tmp_path):
        """Test a database path that cannot be created surfaces as StoreError."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = SQLiteChangeStore(blocker / "sync.db")

        with pytest.raises(StoreError):
            store.count()
        with pytest.raises(StoreError):
            store.append([make_change(ts="2024-01-01T00:00:00Z")])
        # The connection lock is released after the failure
        assert store._conn_lock.acquire(timeout=0)
        store._conn_lock.release()

    def test_persists_across_reopen(self, tmp_path):
        """Test appended changes survive closing and reopening the database."""
        db_path = tmp_path / "nested" / "sync.db"
        store = SQLiteChangeStore(db_path)
        store.connect()
        store.append([make_change(ts="2024-01-01T00:00:00Z")])
        store.close()

        reopened = SQLiteChangeStore(db_path)
        reopened.connect()

        assert reopened.count() == 1
        assert reopened.since("")[0].ts == "2024-01-01T00:00:00Z"
        reopened.close()

    def test_connects_lazily(self, tmp_path):
        """Test operations open the database on first use."""
        store = SQLiteChangeStore(tmp_path / "lazy.db")

        assert store.count() == 0
        store.close()

    def test_times_out_waiting_for_connection(self):
        """Test a call gives up when another call holds the connection."""
        store = SQLiteChangeStore(":memory:")
        store.connect()
        store._conn_lock.acquire()
        try:
            with pytest.raises(StoreTimeoutError):
                store.since("", timeout=0.05)
        finally:
            store._conn_lock.release()
        store.close()

    def test_expired_deadline_interrupts_query(self):
        """Test a long-running query is aborted at the deadline."""
        store = SQLiteChangeStore(":memory:")
        store.connect()
        rows = [make_change(f"t{i}", ts="2024-01-01T00:00:00Z") for i in range(2000)]
        store.append(rows)

        with pytest.raises(StoreTimeoutError):
            with store._session(0.0) as conn:
                conn.execute(
                    "SELECT COUNT(*) FROM sync_changes a, sync_changes b"
                ).fetchone()

        assert store.count() == 2000
        store.close()


class TestOpenStore:
    """Tests for store selection at startup."""

    def test_empty_path_selects_memory(self):
        """Test no database path gives the in-memory store."""
        assert isinstance(open_store(""), MemoryChangeStore)

    def test_path_selects_sqlite(self, tmp_path):
        """Test a database path gives a connected SQLite store."""
        store = open_store(str(tmp_path / "sync.db"))

        assert isinstance(store, SQLiteChangeStore)
        assert store.count() == 0
        store.close()
