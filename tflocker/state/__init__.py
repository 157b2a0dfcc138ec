"""
State Module
============

The version ledger and its backends:
1. SQL ledger (SQLite by default, PostgreSQL in production)
2. In-memory ledger (tests, local development)
"""

from .ledger import CurrentRow, Ledger, LedgerTransaction, StateKey, VersionRecord
from .memory import MemoryLedger
from .database import SQLLedger, create_ledger

__all__ = [
    "CurrentRow",
    "Ledger",
    "LedgerTransaction",
    "StateKey",
    "VersionRecord",
    "MemoryLedger",
    "SQLLedger",
    "create_ledger",
]
