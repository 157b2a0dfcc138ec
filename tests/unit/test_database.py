"""
Unit tests for the SQL ledger (SQLite backend).

Tests cover:
- Ledger primitives and row counts
- Duplicate version detection
- Commit / rollback
- Lock timeouts between connections
- Locking reads that wake up after the current row moved
- Reads that do not wait for writers
- Ledger factory
"""

import uuid
from types import SimpleNamespace

import pytest

from tflocker.errors import StoreTimeout, VersionConflict
from tflocker.state import CurrentRow, MemoryLedger, SQLLedger, StateKey, create_ledger
from tflocker.state.database import SQLTransaction
from tflocker.store import StateStore


class TestSQLTransaction:
    """Tests for SQLTransaction."""

    def test_empty_table(self, sql_ledger, key):
        txn = sql_ledger.begin()

        assert txn.locking_read_current(key) is None
        assert txn.read_current(key) is None
        txn.rollback()

    def test_insert_and_read(self, sql_ledger, key):
        txn = sql_ledger.begin()
        assert txn.insert_version(key, 1, "tok", b"\x00\x01binary") == 1
        txn.commit()

        txn = sql_ledger.begin()
        assert txn.locking_read_current(key) == CurrentRow(1, "tok")
        record = txn.read_current(key)
        txn.rollback()

        assert record.key == key
        assert record.blob == b"\x00\x01binary"

    def test_current_row_is_max_version(self, sql_ledger, key):
        txn = sql_ledger.begin()
        for version in (1, 2, 3):
            txn.insert_version(key, version, None, f"v{version}".encode())
        txn.commit()

        txn = sql_ledger.begin()
        assert txn.locking_read_current(key).version == 3
        assert txn.read_current(key).blob == b"v3"
        txn.rollback()

    def test_duplicate_version_conflicts(self, sql_ledger, key):
        txn = sql_ledger.begin()
        txn.insert_version(key, 1, None, b"a")
        txn.commit()

        txn = sql_ledger.begin()
        with pytest.raises(VersionConflict):
            txn.insert_version(key, 1, None, b"b")
        txn.rollback()

        assert [r.blob for r in sql_ledger.history(key)] == [b"a"]

    def test_rollback_discards(self, sql_ledger, key):
        txn = sql_ledger.begin()
        txn.insert_version(key, 1, None, b"data")
        txn.rollback()

        assert sql_ledger.history(key) == []

    def test_set_lock_token_row_counts(self, sql_ledger, key):
        txn = sql_ledger.begin()
        assert txn.set_lock_token(key, 1, "tok") == 0
        txn.insert_version(key, 1, None, b"data")
        assert txn.set_lock_token(key, 1, "tok") == 1
        txn.commit()

        txn = sql_ledger.begin()
        assert txn.set_lock_token(key, 1, None) == 1
        txn.commit()

        assert sql_ledger.history(key)[0].lock_token is None

    def test_keys_lists_current_versions(self, sql_ledger, key, other_key):
        txn = sql_ledger.begin()
        txn.insert_version(key, 1, None, b"a")
        txn.insert_version(key, 2, "tok", b"b")
        txn.insert_version(other_key, 1, None, b"c")
        txn.commit()

        assert sql_ledger.keys() == [(key, 2, True), (other_key, 1, False)]

    def test_same_name_different_state_ids(self, sql_ledger, key):
        sibling = StateKey(state_id=uuid.uuid4(), name=key.name)
        txn = sql_ledger.begin()
        txn.insert_version(key, 1, None, b"a")
        txn.insert_version(sibling, 1, None, b"b")
        txn.commit()

        assert [r.blob for r in sql_ledger.history(sibling)] == [b"b"]


class TestSQLLocking:
    """Serialization between connections."""

    def test_second_writer_times_out(self, tmp_path, key):
        url = f"sqlite:///{tmp_path / 'states.db'}"
        first = SQLLedger(url, timeout_sec=5.0)
        second = SQLLedger(url, timeout_sec=0.2)

        holder = first.begin()
        holder.locking_read_current(key)

        waiter = second.begin()
        with pytest.raises(StoreTimeout):
            waiter.locking_read_current(key)

        waiter.rollback()
        holder.rollback()
        first.close()
        second.close()

    def test_read_does_not_wait_for_writer(self, tmp_path, key):
        url = f"sqlite:///{tmp_path / 'states.db'}"
        first = SQLLedger(url, timeout_sec=5.0)
        StateStore(first).write(key, "", b"data")
        second = SQLLedger(url, timeout_sec=0.3)

        holder = first.begin()
        holder.locking_read_current(key)
        holder.insert_version(key, 2, None, b"pending")

        assert StateStore(second).read(key) == b"data"
        assert [r.version for r in second.history(key)] == [1]
        assert second.keys() == [(key, 1, False)]

        holder.rollback()
        first.close()
        second.close()

    def test_state_survives_reopen(self, tmp_path, key):
        url = f"sqlite:///{tmp_path / 'states.db'}"
        ledger = SQLLedger(url)
        txn = ledger.begin()
        txn.insert_version(key, 1, "tok", b"data")
        txn.commit()
        ledger.close()

        reopened = SQLLedger(url)
        assert reopened.history(key)[0].lock_token == "tok"
        reopened.close()


class TestCreateLedger:

    def test_memory(self):
        ledger = create_ledger({"database": {"url": "memory://", "timeout_sec": 1}})

        assert isinstance(ledger, MemoryLedger)
        assert ledger.timeout_sec == 1.0

    def test_sqlite_creates_parent_dirs(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "states.db"
        ledger = create_ledger({"database": {"url": f"sqlite:///{db_path}"}})

        assert isinstance(ledger, SQLLedger)
        assert db_path.exists()
        ledger.close()


def _stale_first_lock(monkeypatch, stale):
    """
    Make the first locking query of a transaction return stale, the row a
    waiter blocked on before a newer version was committed.
    """
    calls = []
    original = SQLTransaction._lock_newest

    def lock_newest(self, key):
        calls.append(key)
        if len(calls) == 1:
            return stale
        return original(self, key)

    monkeypatch.setattr(SQLTransaction, "_lock_newest", lock_newest)
    return calls


class TestLockingReadRecheck:
    """The locking read always ends up on the newest row."""

    def test_relocks_newer_version(self, sql_ledger, key, monkeypatch):
        txn = sql_ledger.begin()
        txn.insert_version(key, 1, None, b"a")
        txn.insert_version(key, 2, None, b"b")
        txn.commit()
        calls = _stale_first_lock(monkeypatch, SimpleNamespace(version=1, lock_token=None))

        txn = sql_ledger.begin()
        assert txn.locking_read_current(key) == CurrentRow(2, None)
        txn.rollback()

        assert len(calls) == 2

    def test_relocks_when_key_appeared(self, sql_ledger, key, monkeypatch):
        txn = sql_ledger.begin()
        txn.insert_version(key, 1, "tok1", b"a")
        txn.commit()
        calls = _stale_first_lock(monkeypatch, None)

        txn = sql_ledger.begin()
        assert txn.locking_read_current(key) == CurrentRow(1, "tok1")
        txn.rollback()

        assert len(calls) == 2

    def test_lock_lands_on_newest_row(self, sql_ledger, key, monkeypatch):
        store = StateStore(sql_ledger)
        store.write(key, "", b"v1")
        store.write(key, "", b"v2")
        _stale_first_lock(monkeypatch, SimpleNamespace(version=1, lock_token=None))

        store.lock(key, "t2")

        assert sql_ledger.history(key)[0].lock_token == "t2"
        assert sql_ledger.history(key)[1].lock_token is None

    def test_unlock_clears_newest_row(self, sql_ledger, key, monkeypatch):
        store = StateStore(sql_ledger)
        store.lock(key, "tok1")
        store.write(key, "tok1", b"data")
        _stale_first_lock(monkeypatch, SimpleNamespace(version=1, lock_token="tok1"))

        store.unlock(key, "tok1")

        assert sql_ledger.history(key)[0].lock_token is None
        assert store.write(key, "", b"after") == 3
