"""
Shared fixtures.

Protocol tests run against both ledger backends through the `ledger`
fixture, so every property is checked on the in-memory ledger and on a
file-backed SQLite ledger.
"""

import pytest

from tflocker.state import MemoryLedger, SQLLedger, StateKey
from tflocker.store import StateStore


STATE_ID = "5d0c9d5c-8e0f-4a8e-9a43-3f3c1c6b2a10"


@pytest.fixture
def memory_ledger():
    ledger = MemoryLedger(timeout_sec=2.0)
    yield ledger
    ledger.close()


@pytest.fixture
def sql_ledger(tmp_path):
    ledger = SQLLedger(f"sqlite:///{tmp_path / 'states.db'}", timeout_sec=10.0)
    yield ledger
    ledger.close()


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    """Each backend in turn"""
    if request.param == "memory":
        ledger = MemoryLedger(timeout_sec=10.0)
    else:
        ledger = SQLLedger(f"sqlite:///{tmp_path / 'states.db'}", timeout_sec=10.0)
    yield ledger
    ledger.close()


@pytest.fixture
def store(ledger):
    return StateStore(ledger)


@pytest.fixture
def key():
    return StateKey.parse("env", STATE_ID)


@pytest.fixture
def other_key():
    return StateKey.parse("other", STATE_ID)
