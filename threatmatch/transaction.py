"""
Transaction managers.

One contract, two fixed variants chosen at startup:

- SqlTransactionManager: relational store through SQLAlchemy sessions.
- ObjectStoreTransactionManager: schemaless JSON document store with
  optimistic commits.

Invariant:
Everything a unit of work reads or writes through a manager observes one
consistent state, and either all of its writes commit or none do. A nested
transact() joins the active transaction instead of committing on its own.
"""

import dataclasses
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, TypeVar

from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .database import create_db_engine, get_session_factory, init_database, row_from_record, row_type_for
from .errors import ConfigurationError, RecordNotFoundError, StorageUnavailableError, TransientStorageError
from .models import Key, Record, ThreatType, encode_value, record_type_for
from .retry import is_connection_error, is_transient_error
from .storage import load_store, save_store

T = TypeVar("T")


class TransactionManager(ABC):
    """Run units of work atomically and load, save, delete and look up records."""

    def __init__(self):
        self._local = threading.local()
        self._active_lock = threading.Lock()
        self._active = 0

    @property
    def active_transactions(self) -> int:
        """Number of transactions currently open on any thread."""
        with self._active_lock:
            return self._active

    def in_transaction(self) -> bool:
        return getattr(self._local, "tx", None) is not None

    def assert_in_transaction(self) -> None:
        if not self.in_transaction():
            raise ConfigurationError("Not in a transaction")

    def _tx(self):
        self.assert_in_transaction()
        return self._local.tx

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Scope a unit of work.

        Commits when the block exits normally and rolls back on every other
        exit path. Inside an active transaction this joins it.
        """
        if self.in_transaction():
            yield
            return

        tx = self._begin()
        self._local.tx = tx
        with self._active_lock:
            self._active += 1
        try:
            yield
            self._commit(tx)
        except Exception as e:
            self._rollback(tx)
            translated = self._translate_error(e)
            if translated is not None:
                raise translated from e
            raise
        except BaseException:
            self._rollback(tx)
            raise
        finally:
            self._local.tx = None
            self._close(tx)
            with self._active_lock:
                self._active -= 1

    def transact(self, work: Callable[[], T]) -> T:
        """Run work() in a transaction and return its result."""
        with self.transaction():
            return work()

    def save_all(self, records: Iterable[Record]) -> None:
        self.assert_in_transaction()
        for record in records:
            self.save(record)

    def assert_delete(self, key: Key) -> None:
        """
        Delete a record that must exist in this transaction's view.

        Raises:
            RecordNotFoundError: If nothing is stored under key
        """
        self.assert_in_transaction()
        if not self.exists(key):
            raise RecordNotFoundError(f"Error deleting non-existent entity {key}")
        self.delete(key)

    def teardown(self) -> None:
        """Release backend resources."""

    def _close(self, tx) -> None:
        pass

    def _translate_error(self, error: Exception) -> Optional[Exception]:
        """Map a backend driver error onto the storage error taxonomy, or None to re-raise as is."""
        return None

    @abstractmethod
    def _begin(self):
        ...

    @abstractmethod
    def _commit(self, tx) -> None:
        ...

    @abstractmethod
    def _rollback(self, tx) -> None:
        ...

    @abstractmethod
    def load(self, key: Key) -> Optional[Record]:
        ...

    @abstractmethod
    def load_all(self, kind: str, **equals: Any) -> List[Record]:
        ...

    @abstractmethod
    def save(self, record: Record) -> None:
        ...

    @abstractmethod
    def delete(self, key: Key) -> None:
        ...

    @abstractmethod
    def delete_all(self, kind: str, **equals: Any) -> None:
        ...

    @abstractmethod
    def exists(self, key: Key) -> bool:
        ...


# Relational backend


@dataclass
class _SqlTx:
    session: Session


def _sql_value(value: Any) -> Any:
    # Dates bind natively; threat types are stored in their encoded column form
    if isinstance(value, (set, frozenset, ThreatType)):
        return encode_value(value)
    return value


class SqlTransactionManager(TransactionManager):
    """Transaction manager over a SQLAlchemy engine, one session per transaction per thread."""

    def __init__(self, engine: Engine):
        super().__init__()
        self.engine = engine
        self._session_factory = get_session_factory(engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlTransactionManager":
        return cls(create_db_engine(url))

    def create_schema(self) -> None:
        try:
            init_database(self.engine)
        except sa_exc.OperationalError as e:
            raise self._translate_error(e) from e

    def teardown(self) -> None:
        self.engine.dispose()

    def _begin(self) -> _SqlTx:
        return _SqlTx(session=self._session_factory())

    def _commit(self, tx: _SqlTx) -> None:
        tx.session.commit()

    def _rollback(self, tx: _SqlTx) -> None:
        tx.session.rollback()

    def _close(self, tx: _SqlTx) -> None:
        tx.session.close()

    def _translate_error(self, error: Exception) -> Optional[Exception]:
        if not isinstance(error, sa_exc.OperationalError):
            return None
        # An unreachable server can also report a timeout; it is never retried
        if error.connection_invalidated or is_connection_error(error):
            return StorageUnavailableError(f"Database unavailable: {error.orig}")
        if is_transient_error(error):
            return TransientStorageError(f"Commit conflict or timeout: {error.orig}")
        return StorageUnavailableError(f"Database unavailable: {error.orig}")

    def _session(self) -> Session:
        # Flush so point reads see writes buffered earlier in this transaction
        session = self._tx().session
        session.flush()
        return session

    def load(self, key: Key) -> Optional[Record]:
        row = self._session().get(row_type_for(key.kind), key.id)
        return row.to_record() if row is not None else None

    def load_all(self, kind: str, **equals: Any) -> List[Record]:
        row_type = row_type_for(kind)
        filters = {name: _sql_value(value) for name, value in equals.items()}
        rows = self._session().query(row_type).filter_by(**filters).all()
        return [row.to_record() for row in rows]

    def save(self, record: Record) -> None:
        session = self._session()
        session.merge(row_from_record(record))
        session.flush()

    def delete(self, key: Key) -> None:
        session = self._session()
        row = session.get(row_type_for(key.kind), key.id)
        if row is not None:
            session.delete(row)

    def delete_all(self, kind: str, **equals: Any) -> None:
        row_type = row_type_for(kind)
        filters = {name: _sql_value(value) for name, value in equals.items()}
        self._session().query(row_type).filter_by(**filters).delete(synchronize_session="fetch")

    def exists(self, key: Key) -> bool:
        row_type = row_type_for(key.kind)
        if self.in_transaction():
            return self._session().get(row_type, key.id) is not None
        try:
            with self._session_factory() as session:
                return session.get(row_type, key.id) is not None
        except sa_exc.OperationalError as e:
            raise self._translate_error(e) from e


# Schemaless object store backend


@dataclass
class _ObjectStoreTx:
    version: int
    entities: Dict[str, Dict[str, dict]]
    puts: Dict[Key, dict] = field(default_factory=dict)
    deletes: Set[Key] = field(default_factory=set)


class ObjectStoreTransactionManager(TransactionManager):
    """
    Transaction manager over a single JSON document.

    A transaction reads a snapshot taken at begin and buffers its writes.
    Commit re-reads the document under a lock and rejects the transaction with
    TransientStorageError if any key it writes was changed since the snapshot.
    Safe for threads within one process only.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._commit_lock = threading.Lock()

    def _begin(self) -> _ObjectStoreTx:
        with self._commit_lock:
            store = load_store(self.path)
        return _ObjectStoreTx(version=store["version"], entities=store["entities"])

    def _commit(self, tx: _ObjectStoreTx) -> None:
        if not tx.puts and not tx.deletes:
            return
        with self._commit_lock:
            store = load_store(self.path)
            entities = store["entities"]
            for key in set(tx.puts) | tx.deletes:
                before = tx.entities.get(key.kind, {}).get(key.id)
                now = entities.get(key.kind, {}).get(key.id)
                if before != now:
                    raise TransientStorageError(
                        f"Concurrent modification of {key.kind}/{key.id}; commit rejected"
                    )
            for key in tx.deletes:
                entities.get(key.kind, {}).pop(key.id, None)
            for key, data in tx.puts.items():
                entities.setdefault(key.kind, {})[key.id] = data
            store["version"] = store["version"] + 1
            save_store(self.path, store)

    def _rollback(self, tx: _ObjectStoreTx) -> None:
        tx.puts.clear()
        tx.deletes.clear()

    @staticmethod
    def _current(tx: _ObjectStoreTx, key: Key) -> Optional[dict]:
        if key in tx.puts:
            return tx.puts[key]
        if key in tx.deletes:
            return None
        return tx.entities.get(key.kind, {}).get(key.id)

    def load(self, key: Key) -> Optional[Record]:
        data = self._current(self._tx(), key)
        if data is None:
            return None
        return record_type_for(key.kind).from_dict(data)

    def load_all(self, kind: str, **equals: Any) -> List[Record]:
        tx = self._tx()
        record_type = record_type_for(kind)
        known = {f.name for f in dataclasses.fields(record_type)}
        unknown = set(equals) - known
        if unknown:
            raise ValueError(f"{kind} has no field(s): {', '.join(sorted(unknown))}")
        wanted = {name: encode_value(value) for name, value in equals.items()}

        ids = set(tx.entities.get(kind, {})) | {key.id for key in tx.puts if key.kind == kind}
        results = []
        for record_id in sorted(ids):
            data = self._current(tx, Key(kind, record_id))
            if data is None:
                continue
            if all(data.get(name) == value for name, value in wanted.items()):
                results.append(record_type.from_dict(data))
        return results

    def save(self, record: Record) -> None:
        tx = self._tx()
        key = record.key()
        tx.deletes.discard(key)
        tx.puts[key] = record.to_dict()

    def delete(self, key: Key) -> None:
        tx = self._tx()
        tx.puts.pop(key, None)
        tx.deletes.add(key)

    def delete_all(self, kind: str, **equals: Any) -> None:
        for record in self.load_all(kind, **equals):
            self.delete(record.key())

    def exists(self, key: Key) -> bool:
        if self.in_transaction():
            return self._current(self._tx(), key) is not None
        with self._commit_lock:
            store = load_store(self.path)
        return key.id in store["entities"].get(key.kind, {})
