"""
State Store
===========

The lock-and-write protocol. Each public operation is one all-or-nothing
transaction against a Ledger:

    read(key)               -> current blob (b"" if never written)
    write(key, token, blob) -> new version; LockConflict on token mismatch
    delete(key, token)      -> write of an empty blob
    lock(key, token)        -> AlreadyLocked if another token holds the lock
    unlock(key, token)      -> LockNotHeld unless token holds the lock

Every mutating operation starts with a locking read of the current row, so
operations on one key run strictly one at a time. Lock state is never cached
in process; each call re-reads it from the ledger. Any failure rolls the
transaction back before the error reaches the caller.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from .errors import (
    AlreadyLocked,
    InconsistentState,
    InvalidRequest,
    LockConflict,
    LockNotHeld,
    StateError,
    StoreError,
    VersionConflict,
)
from .lock_info import tokens_match
from .state.database import create_ledger
from .state.ledger import Ledger, LedgerTransaction, StateKey

logger = logging.getLogger(__name__)


class StateStore:
    """Versioned state storage with single-writer locking"""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    @contextmanager
    def _transaction(
        self,
        action: str,
        key: StateKey,
        read_only: bool = False,
    ) -> Iterator[LedgerTransaction]:
        txn = self.ledger.begin(read_only=read_only)
        try:
            yield txn
            txn.commit()
        except StateError as e:
            txn.rollback()
            if isinstance(e, InconsistentState):
                logger.error("%s %s: %s", action, key, e)
            elif isinstance(e, StoreError):
                logger.error("%s %s failed: %s", action, key, e)
            else:
                logger.info("%s %s rejected: %s", action, key, e)
            raise
        except BaseException:
            txn.rollback()
            raise

    # =========================================================================
    # Reads
    # =========================================================================

    def read(self, key: StateKey) -> bytes:
        """Current blob of a key, or b"" if it has no versions"""
        with self._transaction("READ", key, read_only=True) as txn:
            record = txn.read_current(key)
        return record.blob if record else b""

    # =========================================================================
    # Writes
    # =========================================================================

    def write(self, key: StateKey, token: str, blob: bytes) -> int:
        """
        Store blob as the next version of key.

        If the key is locked, token must match the held lock. The lock is
        carried forward to the new version unchanged.

        Returns:
            The version number that was written
        """
        with self._transaction("WRITE", key) as txn:
            current = txn.locking_read_current(key)
            version = current.version if current else 0
            held = current.lock_token if current and current.is_locked else None

            if held is not None and not tokens_match(held, token):
                raise LockConflict(
                    f"Lock ids don't line up for {key}: "
                    f"held [{held}] presented [{token}]"
                )

            version += 1
            inserted = txn.insert_version(key, version, held, blob)
            if inserted != 1:
                raise InconsistentState(
                    f"Insert of {key} version {version} affected {inserted} rows"
                )

        logger.debug("WRITE %s version %d (%d bytes)", key, version, len(blob))
        return version

    def delete(self, key: StateKey, token: str = "") -> int:
        """Write an empty blob; history is kept"""
        return self.write(key, token, b"")

    # =========================================================================
    # Locking
    # =========================================================================

    def lock(self, key: StateKey, token: str) -> None:
        """
        Acquire the lock on key for token.

        Re-acquiring with the token that already holds the lock succeeds.
        A key with no versions is created at version 1 with an empty blob,
        already locked, in the same transaction.
        """
        if not token:
            raise InvalidRequest("Lock token must not be empty")

        try:
            self._lock_once(key, token)
        except VersionConflict:
            # Lost the race to create the key; the winner's row is now
            # visible, so one more pass sees its lock.
            logger.info("LOCK %s lost create race, retrying", key)
            self._lock_once(key, token)

    def _lock_once(self, key: StateKey, token: str) -> None:
        with self._transaction("LOCK", key) as txn:
            current = txn.locking_read_current(key)

            if current is None:
                inserted = txn.insert_version(key, 1, token, b"")
                if inserted != 1:
                    raise InconsistentState(
                        f"Creating locked {key} affected {inserted} rows"
                    )
                logger.debug("LOCK %s created at version 1", key)
                return

            if current.lock_token == token:
                logger.debug("LOCK %s already held by caller", key)
                return

            if current.is_locked:
                raise AlreadyLocked(key, current.lock_token)

            updated = txn.set_lock_token(key, current.version, token)
            if updated != 1:
                raise InconsistentState(
                    f"Locking {key} version {current.version} affected {updated} rows"
                )

    def unlock(self, key: StateKey, token: str) -> None:
        """Release the lock on key; token must exactly match the held lock"""
        with self._transaction("UNLOCK", key) as txn:
            current = txn.locking_read_current(key)

            if current is None or not current.is_locked or current.lock_token != token:
                held = current.lock_token if current else None
                raise LockNotHeld(
                    f"Can't unlock {key} because somebody else holds the lock: "
                    f"held [{held}] presented [{token}]"
                )

            updated = txn.set_lock_token(key, current.version, None)
            if updated != 1:
                raise InconsistentState(
                    f"Unlocking {key} version {current.version} affected {updated} rows"
                )


def create_store(config: dict) -> StateStore:
    """Create a state store from config"""
    return StateStore(create_ledger(config))
