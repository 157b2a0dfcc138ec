"""
In-Memory Version Ledger
========================

Transactional ledger kept entirely in process memory, for tests and local
development without a database.

Rows live in an arena indexed by (key, version); the current row of a key is
its maximum version. Each key has its own lock, taken on first touch inside a
transaction and held until commit or rollback, so operations on one key
serialize while different keys never block each other. Writes are staged in
the transaction and only become visible on commit.

Invariants:
    - All data is lost on process exit
    - A (key, version) pair is committed at most once
    - Lock acquisition is bounded by timeout_sec
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .ledger import (
    CurrentRow,
    Ledger,
    LedgerTransaction,
    StateKey,
    VersionRecord,
)
from ..errors import StoreError, StoreTimeout, VersionConflict

logger = logging.getLogger(__name__)


RowId = Tuple[StateKey, int]


class MemoryTransaction(LedgerTransaction):
    """A transaction against a MemoryLedger"""

    def __init__(self, ledger: "MemoryLedger"):
        self._ledger = ledger
        self._held: Dict[StateKey, threading.Lock] = {}
        self._inserts: Dict[RowId, VersionRecord] = {}
        self._updates: Dict[RowId, Optional[str]] = {}
        self._closed = False

    # =========================================================================
    # Locking
    # =========================================================================

    def _acquire(self, key: StateKey) -> None:
        if self._closed:
            raise StoreError("Transaction is already closed")
        if key in self._held:
            return
        lock = self._ledger._key_lock(key)
        if not lock.acquire(timeout=self._ledger.timeout_sec):
            raise StoreTimeout(
                f"Timed out after {self._ledger.timeout_sec}s waiting for {key}"
            )
        self._held[key] = lock

    def _release_all(self) -> None:
        for lock in self._held.values():
            lock.release()
        self._held.clear()
        self._closed = True

    # =========================================================================
    # Views over committed + staged rows
    # =========================================================================

    def _row(self, row_id: RowId) -> Optional[VersionRecord]:
        if row_id in self._inserts:
            record = self._inserts[row_id]
        else:
            record = self._ledger._rows.get(row_id)
        if record is None:
            return None
        if row_id in self._updates:
            return VersionRecord(
                key=record.key,
                version=record.version,
                lock_token=self._updates[row_id],
                blob=record.blob,
            )
        return record

    def _current_version(self, key: StateKey) -> int:
        version = self._ledger._current.get(key, 0)
        for staged_key, staged_version in self._inserts:
            if staged_key == key and staged_version > version:
                version = staged_version
        return version

    # =========================================================================
    # LedgerTransaction
    # =========================================================================

    def locking_read_current(self, key: StateKey) -> Optional[CurrentRow]:
        self._acquire(key)
        with self._ledger._mutex:
            version = self._current_version(key)
            record = self._row((key, version)) if version else None
        if record is None:
            return None
        return CurrentRow(version=record.version, lock_token=record.lock_token)

    def read_current(self, key: StateKey) -> Optional[VersionRecord]:
        if self._closed:
            raise StoreError("Transaction is already closed")
        with self._ledger._mutex:
            version = self._current_version(key)
            return self._row((key, version)) if version else None

    def insert_version(
        self,
        key: StateKey,
        version: int,
        lock_token: Optional[str],
        blob: bytes,
    ) -> int:
        self._acquire(key)
        row_id = (key, version)
        with self._ledger._mutex:
            if row_id in self._inserts or row_id in self._ledger._rows:
                raise VersionConflict(key, version)
            self._inserts[row_id] = VersionRecord(
                key=key,
                version=version,
                lock_token=lock_token,
                blob=bytes(blob),
            )
        return 1

    def set_lock_token(
        self,
        key: StateKey,
        version: int,
        lock_token: Optional[str],
    ) -> int:
        self._acquire(key)
        row_id = (key, version)
        with self._ledger._mutex:
            if self._row(row_id) is None:
                return 0
            self._updates[row_id] = lock_token
        return 1

    def commit(self) -> None:
        if self._closed:
            raise StoreError("Transaction is already closed")
        try:
            with self._ledger._mutex:
                for row_id in self._inserts:
                    if row_id in self._ledger._rows:
                        raise VersionConflict(*row_id)
                for row_id, record in self._inserts.items():
                    self._ledger._rows[row_id] = record
                    key, version = row_id
                    if version > self._ledger._current.get(key, 0):
                        self._ledger._current[key] = version
                for row_id, lock_token in self._updates.items():
                    record = self._ledger._rows[row_id]
                    self._ledger._rows[row_id] = VersionRecord(
                        key=record.key,
                        version=record.version,
                        lock_token=lock_token,
                        blob=record.blob,
                    )
        finally:
            self._inserts.clear()
            self._updates.clear()
            self._release_all()

    def rollback(self) -> None:
        if self._closed:
            return
        self._inserts.clear()
        self._updates.clear()
        self._release_all()


class MemoryLedger(Ledger):
    """
    In-memory Ledger implementation.

    Thread-safe; intended to be shared by all request threads of one process.

    Example:
        >>> ledger = MemoryLedger()
        >>> txn = ledger.begin()
        >>> txn.insert_version(key, 1, None, b"data")
        1
        >>> txn.commit()
    """

    def __init__(self, timeout_sec: float = 5.0):
        self.timeout_sec = timeout_sec
        self._rows: Dict[RowId, VersionRecord] = {}
        self._current: Dict[StateKey, int] = {}
        self._key_locks: Dict[StateKey, threading.Lock] = {}
        # Guards the three dicts above
        self._mutex = threading.Lock()
        logger.debug("MemoryLedger created (timeout %.1fs)", timeout_sec)

    def _key_lock(self, key: StateKey) -> threading.Lock:
        with self._mutex:
            return self._key_locks.setdefault(key, threading.Lock())

    def begin(self, read_only: bool = False) -> MemoryTransaction:
        # read_current never takes a key lock, so reads need no special path
        return MemoryTransaction(self)

    def history(self, key: StateKey) -> List[VersionRecord]:
        with self._mutex:
            records = [
                record for (row_key, _), record in self._rows.items()
                if row_key == key
            ]
        return sorted(records, key=lambda r: r.version, reverse=True)

    def keys(self) -> List[Tuple[StateKey, int, bool]]:
        with self._mutex:
            return [
                (key, version, self._rows[(key, version)].is_locked)
                for key, version in sorted(
                    self._current.items(), key=lambda item: str(item[0])
                )
            ]

    def close(self) -> None:
        with self._mutex:
            self._rows.clear()
            self._current.clear()
            self._key_locks.clear()
        logger.debug("MemoryLedger closed")
