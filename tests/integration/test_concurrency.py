"""
Concurrency tests for the lock-and-write protocol.

Many threads hit the same key at once; the ledger's row locking must let
exactly one locker win and must never hand out a version twice.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tflocker.errors import AlreadyLocked, LockConflict


WORKERS = 8


def _race(fn, count):
    """Run fn(i) for i in range(count) with all threads released together"""
    barrier = threading.Barrier(count)

    def run(i):
        barrier.wait()
        try:
            return ("ok", fn(i))
        except Exception as e:
            return ("error", e)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(run, range(count)))


class TestConcurrentLocking:

    def test_exactly_one_locker_wins_on_new_key(self, store, ledger, key):
        results = _race(lambda i: store.lock(key, f"tok{i}"), WORKERS)

        winners = [i for i, (kind, _) in enumerate(results) if kind == "ok"]
        losers = [value for kind, value in results if kind == "error"]
        assert len(winners) == 1
        assert len(losers) == WORKERS - 1
        assert all(isinstance(e, AlreadyLocked) for e in losers)

        current = ledger.history(key)[0]
        assert current.lock_token == f"tok{winners[0]}"
        assert all(e.current_token == current.lock_token for e in losers)

    def test_exactly_one_locker_wins_on_existing_key(self, store, ledger, key):
        store.write(key, "", b"data")

        results = _race(lambda i: store.lock(key, f"tok{i}"), WORKERS)

        assert sum(1 for kind, _ in results if kind == "ok") == 1
        assert len(ledger.history(key)) == 1

    def test_unlocked_writers_get_distinct_versions(self, store, ledger, key):
        results = _race(lambda i: store.write(key, "", f"w{i}".encode()), WORKERS)

        versions = sorted(value for kind, value in results if kind == "ok")
        assert versions == list(range(1, WORKERS + 1))
        assert [r.version for r in ledger.history(key)] == list(range(WORKERS, 0, -1))

    def test_only_holder_writes_while_others_race(self, store, ledger, key):
        store.lock(key, "holder")

        def attempt(i):
            token = "holder" if i == 0 else f"intruder{i}"
            return store.write(key, token, f"w{i}".encode())

        results = _race(attempt, WORKERS)

        assert results[0] == ("ok", 2)
        for kind, value in results[1:]:
            assert kind == "error"
            assert isinstance(value, LockConflict)
        assert store.read(key) == b"w0"
        assert len(ledger.history(key)) == 2
