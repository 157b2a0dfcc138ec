"""
Lock Info
=========

Lock tokens are opaque to the ledger, but HTTP state clients send a JSON
document describing the lock as the LOCK/UNLOCK body and only its ID as the
?ID= parameter on writes. This module encodes and decodes that document.

    {"ID": "...", "Operation": "OperationTypeApply", "Info": "",
     "Who": "user@host", "Version": "1.6.0",
     "Created": "2024-01-01T12:00:00.123456789Z", "Path": ""}
"""

import getpass
import json
import socket
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser


@dataclass
class LockInfo:
    """Who holds a lock, and why"""
    ID: str
    Operation: str = ""
    Info: str = ""
    Who: str = ""
    Version: str = ""
    Created: str = ""
    Path: str = ""

    @classmethod
    def new(cls, operation: str = "", info: str = "", version: str = "") -> "LockInfo":
        """Create lock info with a random ID for the current user"""
        try:
            who = f"{getpass.getuser()}@{socket.gethostname()}"
        except (KeyError, OSError):
            who = socket.gethostname()
        return cls(
            ID=str(uuid.uuid4()),
            Operation=operation,
            Info=info,
            Who=who,
            Version=version,
            Created=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> "LockInfo":
        """
        Parse a lock info document.

        Unknown fields are ignored. Raises ValueError if the data is not a
        JSON object with a string ID.
        """
        try:
            doc = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Lock info is not valid JSON: {e}") from e
        if not isinstance(doc, dict) or not isinstance(doc.get("ID"), str):
            raise ValueError("Lock info must be a JSON object with a string ID")
        known = {name: doc[name] for name in cls.__dataclass_fields__ if name in doc}
        return cls(**{k: "" if v is None else str(v) for k, v in known.items()})

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @property
    def created_at(self) -> Optional[datetime]:
        """Created as a datetime, None when missing or unparseable"""
        if not self.Created:
            return None
        try:
            return date_parser.isoparse(self.Created)
        except ValueError:
            return None


def lock_id(token: Optional[str]) -> Optional[str]:
    """The ID of a lock info token, or the token itself if it is not one"""
    if not token:
        return token
    try:
        return LockInfo.from_json(token).ID
    except ValueError:
        return token


def tokens_match(held: Optional[str], presented: Optional[str]) -> bool:
    """
    Whether a presented token proves ownership of the held lock.

    Exact equality, or equality with the ID of a lock info document. An empty
    presented token never matches.
    """
    if not held or not presented:
        return False
    return presented == held or presented == lock_id(held)
