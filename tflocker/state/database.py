"""
SQL Version Ledger
==================

Durable ledger on top of SQLAlchemy. SQLite is the default store; any
database with row-level locking (PostgreSQL in production) can be used by
pointing database.url at it.

Serialization:
- PostgreSQL: SELECT ... FOR UPDATE on the current row, held until the
  transaction ends. A racing insert of the same primary key blocks, then
  fails with a unique violation.
- SQLite: has no row locks, so every transaction that may write starts
  with BEGIN IMMEDIATE and takes the database write lock instead. Read-only
  transactions use a plain BEGIN and, under WAL, never wait for writers.

Every call is bounded by timeout_sec (busy timeout on SQLite,
statement_timeout / lock_timeout on PostgreSQL).
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import (
    create_engine,
    Column,
    String,
    BigInteger,
    Text,
    LargeBinary,
    Uuid,
    and_,
    func,
    insert,
    event,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import (
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import (
    declarative_base,
    sessionmaker,
    Session,
)

from .ledger import (
    CurrentRow,
    Ledger,
    LedgerTransaction,
    StateKey,
    VersionRecord,
)
from .memory import MemoryLedger
from ..errors import StoreError, StoreTimeout, VersionConflict

logger = logging.getLogger(__name__)


Base = declarative_base()

# Engine execution option marking sessions that never write
READ_ONLY_OPTION = "ledger_read_only"


class StateVersion(Base):
    """One version of one state blob"""
    __tablename__ = "states"

    state_id = Column(Uuid, primary_key=True)
    name = Column(String(64), primary_key=True)
    version = Column(BigInteger, primary_key=True, default=0, autoincrement=False)

    # Non-null and non-empty means the key is locked
    lock_token = Column(Text, nullable=True)
    blob = Column(LargeBinary, nullable=False)

    def to_record(self) -> VersionRecord:
        return VersionRecord(
            key=StateKey(state_id=self.state_id, name=self.name),
            version=self.version,
            lock_token=self.lock_token,
            blob=bytes(self.blob),
        )


# Driver messages that mean a deadline was hit rather than a broken store
_TIMEOUT_MARKERS = (
    "database is locked",
    "statement timeout",
    "lock timeout",
    "timeout expired",
)


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Turn SQLAlchemy errors into the store error taxonomy"""
    try:
        yield
    except PoolTimeoutError as e:
        raise StoreTimeout(f"{action}: connection pool timed out") from e
    except OperationalError as e:
        message = str(e.orig).lower()
        if any(marker in message for marker in _TIMEOUT_MARKERS):
            raise StoreTimeout(f"{action}: {e.orig}") from e
        raise StoreError(f"{action}: {e.orig}") from e
    except SQLAlchemyError as e:
        raise StoreError(f"{action}: {e}") from e


def _key_filter(key: StateKey):
    return and_(
        StateVersion.state_id == key.state_id,
        StateVersion.name == key.name,
    )


class SQLTransaction(LedgerTransaction):
    """A ledger transaction bound to one SQLAlchemy session"""

    def __init__(self, session: Session):
        self.session = session

    def _lock_newest(self, key: StateKey):
        return (
            self.session.query(StateVersion.version, StateVersion.lock_token)
            .filter(_key_filter(key))
            .order_by(StateVersion.version.desc())
            .limit(1)
            .with_for_update()
            .first()
        )

    def _newest_version(self, key: StateKey) -> Optional[int]:
        return (
            self.session.query(func.max(StateVersion.version))
            .filter(_key_filter(key))
            .scalar()
        )

    def locking_read_current(self, key: StateKey) -> Optional[CurrentRow]:
        with translate_errors(f"locking read of {key}"):
            while True:
                row = self._lock_newest(key)
                newest = self._newest_version(key)
                locked = row.version if row is not None else None
                if locked == newest:
                    break
                # Under READ COMMITTED a FOR UPDATE that waited re-checks the
                # row it blocked on, not the ordering, so a version committed
                # meanwhile is missed. Lock again until the newest row is ours.
                logger.debug(
                    "Current row of %s moved from %s to %s while locking",
                    key, locked, newest,
                )
        if row is None:
            return None
        return CurrentRow(version=row.version, lock_token=row.lock_token)

    def read_current(self, key: StateKey) -> Optional[VersionRecord]:
        with translate_errors(f"read of {key}"):
            row = (
                self.session.query(StateVersion)
                .filter(_key_filter(key))
                .order_by(StateVersion.version.desc())
                .first()
            )
        return row.to_record() if row else None

    def insert_version(
        self,
        key: StateKey,
        version: int,
        lock_token: Optional[str],
        blob: bytes,
    ) -> int:
        with translate_errors(f"insert of {key} version {version}"):
            try:
                result = self.session.execute(
                    insert(StateVersion).values(
                        state_id=key.state_id,
                        name=key.name,
                        version=version,
                        lock_token=lock_token,
                        blob=bytes(blob),
                    )
                )
            except IntegrityError as e:
                raise VersionConflict(key, version) from e
        return result.rowcount

    def set_lock_token(
        self,
        key: StateKey,
        version: int,
        lock_token: Optional[str],
    ) -> int:
        with translate_errors(f"lock update of {key} version {version}"):
            return (
                self.session.query(StateVersion)
                .filter(_key_filter(key), StateVersion.version == version)
                .update(
                    {StateVersion.lock_token: lock_token},
                    synchronize_session=False,
                )
            )

    def commit(self) -> None:
        try:
            with translate_errors("commit"):
                self.session.commit()
        finally:
            self.session.close()

    def rollback(self) -> None:
        try:
            with translate_errors("rollback"):
                self.session.rollback()
        finally:
            self.session.close()


class SQLLedger(Ledger):
    """
    Version ledger stored in a single SQL table.

    The engine and its connection pool are shared by all request threads.
    """

    def __init__(self, db_url: str, timeout_sec: float = 5.0, echo: bool = False):
        with translate_errors("database url"):
            self.url = make_url(db_url)
        self.timeout_sec = timeout_sec
        backend = self.url.get_backend_name()

        engine_args = {}
        if backend == "sqlite":
            if self.url.database and self.url.database != ":memory:":
                Path(self.url.database).parent.mkdir(parents=True, exist_ok=True)
            connect_args = {
                "check_same_thread": False,
                "timeout": timeout_sec,
            }
        elif backend == "postgresql":
            timeout_ms = int(timeout_sec * 1000)
            connect_args = {
                "connect_timeout": max(1, int(timeout_sec)),
                "options": (
                    f"-c statement_timeout={timeout_ms} "
                    f"-c lock_timeout={timeout_ms}"
                ),
            }
            engine_args["pool_timeout"] = timeout_sec
        else:
            connect_args = {}
            engine_args["pool_timeout"] = timeout_sec

        with translate_errors("engine setup"):
            self.engine = create_engine(
                self.url,
                echo=echo,
                connect_args=connect_args,
                **engine_args,
            )

        if backend == "sqlite":
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                # Hand transaction control to the "begin" listener below
                dbapi_connection.isolation_level = None
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.close()

            @event.listens_for(self.engine, "begin")
            def begin_immediate(conn):
                if conn.get_execution_options().get(READ_ONLY_OPTION):
                    conn.exec_driver_sql("BEGIN")
                else:
                    conn.exec_driver_sql("BEGIN IMMEDIATE")

        with translate_errors("schema creation"):
            Base.metadata.create_all(self.engine)

        self.Session = sessionmaker(bind=self.engine)
        self.ReadSession = sessionmaker(
            bind=self.engine.execution_options(**{READ_ONLY_OPTION: True})
        )
        logger.info("Ledger ready at %s", self.url.render_as_string(hide_password=True))

    def begin(self, read_only: bool = False) -> SQLTransaction:
        if read_only:
            return SQLTransaction(self.ReadSession())
        return SQLTransaction(self.Session())

    def history(self, key: StateKey) -> List[VersionRecord]:
        with translate_errors(f"history of {key}"), self.ReadSession() as session:
            rows = (
                session.query(StateVersion)
                .filter(_key_filter(key))
                .order_by(StateVersion.version.desc())
                .all()
            )
            return [row.to_record() for row in rows]

    def keys(self) -> List[Tuple[StateKey, int, bool]]:
        with translate_errors("key listing"), self.ReadSession() as session:
            latest = (
                session.query(
                    StateVersion.state_id,
                    StateVersion.name,
                    func.max(StateVersion.version).label("version"),
                )
                .group_by(StateVersion.state_id, StateVersion.name)
                .subquery()
            )
            rows = (
                session.query(
                    StateVersion.state_id,
                    StateVersion.name,
                    StateVersion.version,
                    StateVersion.lock_token,
                )
                .join(
                    latest,
                    and_(
                        StateVersion.state_id == latest.c.state_id,
                        StateVersion.name == latest.c.name,
                        StateVersion.version == latest.c.version,
                    ),
                )
                .order_by(StateVersion.name, StateVersion.state_id)
                .all()
            )
        return [
            (StateKey(state_id=row.state_id, name=row.name), row.version, bool(row.lock_token))
            for row in rows
        ]

    def close(self) -> None:
        self.engine.dispose()


def create_ledger(config: dict) -> Ledger:
    """Create the ledger named by config["database"]"""
    db_config = config.get("database", {})
    timeout_sec = float(db_config.get("timeout_sec", 5))
    url = db_config.get("url", "sqlite:///./state/tflocker.db")
    if url == "memory://":
        return MemoryLedger(timeout_sec=timeout_sec)
    return SQLLedger(url, timeout_sec=timeout_sec, echo=db_config.get("echo", False))
