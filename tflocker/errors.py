"""
Error Taxonomy
==============

Every failure of a state operation is classified here. The HTTP layer only
maps these classes to status codes; nothing below it decides how a failure is
reported.

    StateError
    ├── InvalidRequest (ValueError)
    │   └── InvalidStateKey
    ├── LockConflict
    │   └── VersionConflict
    ├── AlreadyLocked
    ├── LockNotHeld
    ├── InconsistentState
    └── StoreError
        └── StoreTimeout
"""

from typing import Optional


class StateError(Exception):
    """Base class for all state backend errors"""


class InvalidRequest(StateError, ValueError):
    """Malformed input rejected before any transaction is started"""


class InvalidStateKey(InvalidRequest):
    """state_id is not a UUID or name is empty / longer than 64 characters"""


class LockConflict(StateError):
    """A write was attempted without holding the current lock token"""


class VersionConflict(LockConflict):
    """Another transaction committed the same (key, version) first"""

    def __init__(self, key, version: int):
        super().__init__(f"Version {version} of {key} already exists")
        self.key = key
        self.version = version


class AlreadyLocked(StateError):
    """Lock acquisition attempted while another token holds the lock"""

    def __init__(self, key, current_token: Optional[str]):
        super().__init__(f"{key} is already locked")
        self.key = key
        self.current_token = current_token


class LockNotHeld(StateError):
    """Unlock attempted with a token that does not hold the lock"""


class InconsistentState(StateError):
    """An insert or update touched an unexpected number of rows"""


class StoreError(StateError):
    """The underlying store failed (connection loss, driver error)"""


class StoreTimeout(StoreError):
    """A store call exceeded its deadline"""
