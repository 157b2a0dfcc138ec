"""
Version Ledger
==============

Append-only sequence of blob versions per state key, with a lock annotation
on the current row.

Contract shared by every ledger backend:
- A transaction is begun with Ledger.begin() and ended by the caller with
  commit() or rollback(). The ledger never decides either on its own.
- locking_read_current() holds an exclusive lock on the key until the
  transaction ends. It is the only serialization point.
- Transactions begun with read_only=True only call read_current() and
  never wait on a locking transaction.
- insert_version() raises VersionConflict if (key, version) already exists.
- Rows are never changed after insert, except set_lock_token() on the
  current row.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List, Tuple

from ..errors import InvalidStateKey


MAX_NAME_LENGTH = 64


@dataclass(frozen=True)
class StateKey:
    """Identifies one logical state object"""
    state_id: uuid.UUID
    name: str

    @classmethod
    def parse(cls, name: str, state_id: str) -> "StateKey":
        """Validate raw path parameters into a key"""
        if not name:
            raise InvalidStateKey("State name must not be empty")
        if len(name) > MAX_NAME_LENGTH:
            raise InvalidStateKey(
                f"State name too long (> {MAX_NAME_LENGTH}): {name}"
            )
        try:
            parsed = uuid.UUID(str(state_id))
        except ValueError as e:
            raise InvalidStateKey(f"Can't parse uuid [{state_id}]: {e}") from e
        return cls(state_id=parsed, name=name)

    def __str__(self) -> str:
        return f"{self.name}/{self.state_id}"


@dataclass(frozen=True)
class CurrentRow:
    """Version and lock token of a key's current row"""
    version: int
    lock_token: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        # An empty stored token means unlocked
        return bool(self.lock_token)


@dataclass(frozen=True)
class VersionRecord:
    """A full version row"""
    key: StateKey
    version: int
    lock_token: Optional[str]
    blob: bytes

    @property
    def is_locked(self) -> bool:
        return bool(self.lock_token)


class LedgerTransaction(ABC):
    """One open transaction against a ledger"""

    @abstractmethod
    def locking_read_current(self, key: StateKey) -> Optional[CurrentRow]:
        """Lock and return the key's current row, or None if it has none"""

    @abstractmethod
    def read_current(self, key: StateKey) -> Optional[VersionRecord]:
        """Return the key's current row without locking it"""

    @abstractmethod
    def insert_version(
        self,
        key: StateKey,
        version: int,
        lock_token: Optional[str],
        blob: bytes,
    ) -> int:
        """Insert a new row, returning the number of rows inserted"""

    @abstractmethod
    def set_lock_token(
        self,
        key: StateKey,
        version: int,
        lock_token: Optional[str],
    ) -> int:
        """Set or clear the lock token of a row, returning rows affected"""

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


class Ledger(ABC):
    """Durable, transactional storage of version rows"""

    @abstractmethod
    def begin(self, read_only: bool = False) -> LedgerTransaction:
        """
        Start a new transaction.

        A read_only transaction only calls read_current and must not wait
        on transactions holding a locking read.
        """

    @abstractmethod
    def history(self, key: StateKey) -> List[VersionRecord]:
        """All versions of a key, newest first"""

    @abstractmethod
    def keys(self) -> List[Tuple[StateKey, int, bool]]:
        """Every key with its current version and whether it is locked"""

    def close(self) -> None:
        """Release any resources held by the ledger"""
