# -*- encoding: utf-8 -*-
"""
idbstore.hosts.sqlite - IndexedDB-shaped host engine on sqlite3 for CPython.

The engine speaks the same event contract as the browser's indexedDB, so
the service and event bridge run unchanged outside Pyodide:

- factory.open() / deleteDatabase() return requests whose onupgradeneeded,
  onblocked, onsuccess and onerror callbacks fire from the event loop
- connection.transaction() returns a transaction that stays active while
  its creator runs synchronously and while its request callbacks dispatch;
  it commits once no requests are pending and fires oncomplete
- a failed request fires its onerror, then the transaction's onerror, then
  the transaction rolls back and fires onabort
- transactions on one database run one at a time in creation order
- opens and deletions on one database are queued; a version upgrade fires
  versionchange at other connections, then blocked while any stay open

Storage layout (one sqlite file per database, or a private in-memory
connection when the root is :memory:):
- PRAGMA user_version holds the database version (0 = does not exist)
- idb_stores holds store schema and key generator state
- idb_records holds records keyed by (store, encoded key); the key codec
  preserves IndexedDB ordering under sqlite's memcmp BLOB comparison
- values are pickled, standing in for structured clone
"""

from __future__ import annotations

import asyncio
import math
import os
import pickle
import sqlite3
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import quote

from .. import config, ui_log
from ..errors import (
    DataError,
    HostRequestError,
    TransactionAbortedError,
    TransactionInactiveError,
)
from ..keys import KeyRange, decode_key, encode_key, normalize_key
from .base import Host

_SCHEMA = """
CREATE TABLE IF NOT EXISTS idb_stores (
    name TEXT PRIMARY KEY,
    key_path TEXT,
    auto_increment INTEGER NOT NULL DEFAULT 0,
    current_key INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS idb_records (
    store TEXT NOT NULL,
    key BLOB NOT NULL,
    value BLOB NOT NULL,
    PRIMARY KEY (store, key)
) WITHOUT ROWID;
"""

DIRECTIONS = ("next", "nextunique", "prev", "prevunique")
MODES = ("readonly", "readwrite")
MAX_GENERATED_KEY = 2**53


@dataclass
class SqliteHostConfig:
    """
    Attributes:
        root: directory holding one sqlite file per database, or None to keep
            databases in memory for the lifetime of the host
        synchronous: sqlite synchronous pragma for file databases
    """

    root: Optional[Path] = config.DEFAULT_SQLITE_ROOT
    synchronous: str = "NORMAL"

    @classmethod
    def from_env(cls) -> "SqliteHostConfig":
        return cls(root=config.sqlite_root(), synchronous=config.sqlite_synchronous())

    @classmethod
    def memory(cls) -> "SqliteHostConfig":
        return cls(root=None)


class Event:
    """Event passed to on<event> callbacks."""

    def __init__(
        self,
        type: str,
        target: Any,
        *,
        oldVersion: Optional[int] = None,
        newVersion: Optional[int] = None,
    ):
        self.type = type
        self.target = target
        self.oldVersion = oldVersion
        self.newVersion = newVersion

    def __repr__(self) -> str:
        return f"Event({self.type!r})"


def _dispatch(target: Any, attr: str, event: Event) -> bool:
    """
    Call target.<attr>(event) if set.

    Returns False if the handler raised. Handler exceptions are logged, never
    propagated into the engine.
    """
    handler = getattr(target, attr, None)
    if handler is None:
        return True
    try:
        handler(event)
    except Exception as ex:
        ui_log.error(
            "event_handler_failed", event=event.type, error=f"{type(ex).__name__}: {ex}"
        )
        return False
    return True


class DOMStringList(list):
    """Sorted list of names with the contains() accessor of DOMStringList."""

    def contains(self, name: str) -> bool:
        return name in self


class Request:
    """IDBRequest equivalent."""

    def __init__(self, source: Any = None, transaction: Any = None):
        self.source = source
        self.transaction = transaction
        self.result = None
        self.error = None
        self.readyState = "pending"
        self.onsuccess = None
        self.onerror = None

    def _succeed(self, result: Any, **event_kwa) -> bool:
        self.readyState = "done"
        self.result = result
        self.error = None
        return _dispatch(self, "onsuccess", Event("success", self, **event_kwa))

    def _fail(self, error: HostRequestError) -> bool:
        self.readyState = "done"
        self.result = None
        self.error = error
        return _dispatch(self, "onerror", Event("error", self))


class OpenDBRequest(Request):
    """IDBOpenDBRequest equivalent."""

    def __init__(self):
        super().__init__()
        self.onupgradeneeded = None
        self.onblocked = None


@dataclass
class _StoreSchema:
    name: str
    key_path: Optional[str] = None
    auto_increment: bool = False


@dataclass
class _OpenJob:
    request: OpenDBRequest
    version: Optional[int]
    delete: bool = False
    notified: bool = False
    blocked_fired: bool = False
    waiting: bool = False
    old_version: int = 0


def _option(options: Any, name: str, default: Any = None) -> Any:
    if options is None:
        return default
    if isinstance(options, dict):
        return options.get(name, default)
    return getattr(options, name, default)


def _extract_key_path(value: Any, key_path: str) -> tuple[bool, Any]:
    current = value
    for part in key_path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _can_inject(value: Any, key_path: str) -> bool:
    current = value
    for part in key_path.split(".")[:-1]:
        if not isinstance(current, dict):
            return False
        if part not in current:
            return True
        current = current[part]
    return isinstance(current, dict)


def _inject_key_path(value: Any, key_path: str, key: Any) -> None:
    parts = key_path.split(".")
    current = value
    for part in parts[:-1]:
        if not isinstance(current, dict):
            raise DataError(f"Cannot inject generated key at '{key_path}'")
        current = current.setdefault(part, {})
    if not isinstance(current, dict):
        raise DataError(f"Cannot inject generated key at '{key_path}'")
    current[parts[-1]] = key


def _clone(value: Any) -> bytes:
    try:
        return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    except (pickle.PicklingError, TypeError, AttributeError) as ex:
        raise HostRequestError(
            f"Value could not be cloned: {ex}", name="DataCloneError"
        ) from ex


def _range_clause(query: Any) -> tuple[str, list]:
    """SQL predicate and parameters selecting a key or KeyRange."""
    if isinstance(query, KeyRange):
        clauses = []
        params: list = []
        lower, upper = query.encoded_bounds()
        if lower is not None:
            clauses.append("key > ?" if query.lower_open else "key >= ?")
            params.append(lower)
        if upper is not None:
            clauses.append("key < ?" if query.upper_open else "key <= ?")
            params.append(upper)
        return " AND ".join(clauses), params
    return "key = ?", [encode_key(query)]


# =============================================================================
# ENGINE
# =============================================================================


class _Engine:
    """Per-database state shared by every connection a host opens to it."""

    def __init__(self, host: "SqliteHost", name: str):
        self.host = host
        self.name = name
        self.sql: Optional[sqlite3.Connection] = None
        self.connections: list[SqliteDatabase] = []
        self.transactions: deque[SqliteTransaction] = deque()
        self.running: Optional[SqliteTransaction] = None
        self.open_queue: deque[_OpenJob] = deque()

    @property
    def path(self) -> Optional[Path]:
        root = self.host.config.root
        if root is None:
            return None
        return Path(root) / f"{quote(self.name, safe='')}.sqlite3"

    def connect(self) -> sqlite3.Connection:
        if self.sql is not None:
            return self.sql
        path = self.path
        if path is None:
            sql = sqlite3.connect(":memory:", isolation_level=None)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            sql = sqlite3.connect(str(path), isolation_level=None)
            sql.execute("PRAGMA journal_mode=WAL")
            sql.execute(f"PRAGMA synchronous={self.host.config.synchronous}")
        sql.executescript(_SCHEMA)
        self.sql = sql
        return sql

    def release_if_idle(self) -> None:
        """Close the sqlite handle of a file database nobody is using."""
        if self.path is None or self.sql is None:
            return
        if self.connections or self.running or self.transactions or self.open_queue:
            return
        self.sql.close()
        self.sql = None

    def shutdown(self) -> None:
        """Abort outstanding work and release the sqlite handle."""
        jobs, self.open_queue = list(self.open_queue), deque()
        pending = list(self.transactions)
        self.transactions.clear()
        if self.running is not None:
            pending.insert(0, self.running)
        for tx in pending:
            tx._abort(TransactionAbortedError("The host was closed"))
        for job in jobs:
            if job.request.readyState == "pending":
                job.request._fail(TransactionAbortedError("The host was closed"))
        if self.sql is not None:
            self.sql.close()
            self.sql = None

    def read_version(self) -> int:
        path = self.path
        if path is not None and not path.exists() and self.sql is None:
            return 0
        return int(self.connect().execute("PRAGMA user_version").fetchone()[0])

    def read_stores(self) -> dict[str, _StoreSchema]:
        rows = self.connect().execute(
            "SELECT name, key_path, auto_increment FROM idb_stores"
        )
        return {
            name: _StoreSchema(name, key_path, bool(auto_increment))
            for name, key_path, auto_increment in rows
        }

    # Key generator

    def generate_key(self, store: str) -> int:
        row = self.sql.execute(
            "SELECT current_key FROM idb_stores WHERE name = ?", (store,)
        ).fetchone()
        key = int(row[0])
        if key > MAX_GENERATED_KEY:
            raise HostRequestError(
                f"Key generator for '{store}' is exhausted", name="ConstraintError"
            )
        self.sql.execute(
            "UPDATE idb_stores SET current_key = ? WHERE name = ?", (key + 1, store)
        )
        return key

    def bump_generator(self, store: str, key: Any) -> None:
        if not isinstance(key, (int, float)) or key < 1:
            return
        nxt = min(math.floor(key) + 1, MAX_GENERATED_KEY + 1)
        self.sql.execute(
            "UPDATE idb_stores SET current_key = ? WHERE name = ? AND current_key < ?",
            (nxt, store, nxt),
        )

    # Transactions

    def schedule(self, tx: "SqliteTransaction") -> None:
        self.transactions.append(tx)
        self._run_next()

    def _run_next(self) -> None:
        if self.running is not None or not self.transactions:
            return
        tx = self.transactions.popleft()
        self.running = tx
        self.host.call_soon(tx._begin)

    def finished(self, tx: "SqliteTransaction", ok: bool) -> None:
        if self.running is tx:
            self.running = None
        elif tx in self.transactions:
            self.transactions.remove(tx)
        db = tx.db
        db._transactions.discard(tx)
        if tx.mode == "versionchange":
            self._upgrade_done(tx, ok)
        if db._close_pending and not db._transactions:
            self.finalize(db)
        self._run_next()
        self.release_if_idle()

    # Connections

    def finalize(self, db: "SqliteDatabase") -> None:
        if db in self.connections:
            self.connections.remove(db)
            ui_log.debug("sqlite_connection_closed", database=self.name)
        if self.open_queue and self.open_queue[0].waiting:
            self.open_queue[0].waiting = False
            self.host.call_soon(self._process_open)
        self.release_if_idle()

    def enqueue_open(self, job: _OpenJob) -> None:
        self.open_queue.append(job)
        if len(self.open_queue) == 1:
            self.host.call_soon(self._process_open)
        elif self.open_queue[0].waiting:
            self.host.call_soon(self._notify_queued, job)

    def _notify_queued(self, job: _OpenJob) -> None:
        """
        Fire blocked at an upgrade or delete queued behind a blocked job.

        It would otherwise wait silently on the same open connections.
        """
        if job.blocked_fired or not any(queued is job for queued in self.open_queue):
            return
        if not self.open_queue[0].waiting:
            return
        if not any(not db._close_pending for db in self.connections):
            return
        try:
            current = self.read_version()
        except sqlite3.Error:
            return
        if job.delete:
            target = None
        else:
            target = job.version if job.version is not None else (current or 1)
            if target <= current:
                return
        job.blocked_fired = True
        _dispatch(
            job.request,
            "onblocked",
            Event("blocked", job.request, oldVersion=current, newVersion=target),
        )

    def _next_open(self) -> None:
        if self.open_queue:
            self.open_queue.popleft()
        if self.open_queue:
            self.host.call_soon(self._process_open)
        self.release_if_idle()

    def _process_open(self) -> None:
        if not self.open_queue:
            return
        job = self.open_queue[0]
        if job.waiting:
            return
        request = job.request
        try:
            current = self.read_version()
        except sqlite3.Error as ex:
            request._fail(HostRequestError(str(ex), name="UnknownError"))
            self._next_open()
            return
        job.old_version = current

        if job.delete:
            target = None
        else:
            target = job.version if job.version is not None else (current or 1)
            if target < current:
                request._fail(
                    HostRequestError(
                        f"The requested version ({target}) is less than the "
                        f"existing version ({current}).",
                        name="VersionError",
                    )
                )
                self._next_open()
                return
            if target == current:
                try:
                    db = SqliteDatabase(self, current)
                except sqlite3.Error as ex:
                    request._fail(HostRequestError(str(ex), name="UnknownError"))
                    self._next_open()
                    return
                self.connections.append(db)
                self._next_open()
                request._succeed(db)
                return

        if not job.notified:
            job.notified = True
            for db in list(self.connections):
                if not db._close_pending:
                    _dispatch(
                        db,
                        "onversionchange",
                        Event("versionchange", db, oldVersion=current, newVersion=target),
                    )
        if self.connections:
            # close-pending connections are waited on without a blocked event
            if not job.blocked_fired and any(
                not db._close_pending for db in self.connections
            ):
                job.blocked_fired = True
                _dispatch(
                    request,
                    "onblocked",
                    Event("blocked", request, oldVersion=current, newVersion=target),
                )
            job.waiting = True
            return

        if job.delete:
            self._delete(job)
        else:
            self._upgrade(job, target)

    def _upgrade(self, job: _OpenJob, target: int) -> None:
        request = job.request
        current = job.old_version
        try:
            db = SqliteDatabase(self, target)
        except sqlite3.Error as ex:
            request._fail(HostRequestError(str(ex), name="UnknownError"))
            self._next_open()
            return
        self.connections.append(db)
        tx = SqliteTransaction(db, list(db.objectStoreNames), "versionchange")
        tx._open_job = job
        db._transactions.add(tx)
        self.running = tx
        request.result = db
        request.transaction = tx
        request.readyState = "done"
        tx._begin()
        if tx._finished:
            return
        try:
            self.sql.execute(f"PRAGMA user_version = {int(target)}")
        except sqlite3.Error as ex:
            tx._abort(HostRequestError(str(ex), name="UnknownError"))
            return
        ok = _dispatch(
            request,
            "onupgradeneeded",
            Event("upgradeneeded", request, oldVersion=current, newVersion=target),
        )
        tx._active = False
        if not ok:
            tx._abort(TransactionAbortedError("Upgrade handler raised an exception"))
            return
        tx._schedule_pump()

    def _upgrade_done(self, tx: "SqliteTransaction", ok: bool) -> None:
        job = tx._open_job
        request = job.request
        db = tx.db
        request.transaction = None
        if ok and not db._close_pending:
            self._next_open()
            request._succeed(db)
            return
        db.version = job.old_version
        db._close_pending = True
        if db in self.connections:
            self.connections.remove(db)
        self._next_open()
        request._fail(
            tx.error
            if ok is False and tx.error is not None
            else TransactionAbortedError("Connection closed during upgrade")
        )

    def _delete(self, job: _OpenJob) -> None:
        if self.sql is not None:
            self.sql.close()
            self.sql = None
        path = self.path
        if path is not None:
            for suffix in ("", "-wal", "-shm"):
                candidate = Path(f"{path}{suffix}")
                if candidate.exists():
                    os.remove(candidate)
        ui_log.debug("sqlite_database_deleted", database=self.name)
        self._next_open()
        job.request._succeed(None, oldVersion=job.old_version, newVersion=None)


# =============================================================================
# CONNECTION / TRANSACTION / STORE / CURSOR
# =============================================================================


class SqliteDatabase:
    """IDBDatabase equivalent."""

    def __init__(self, engine: _Engine, version: int):
        self._engine = engine
        self.name = engine.name
        self.version = version
        self._schema = engine.read_stores()
        self.objectStoreNames = DOMStringList(sorted(self._schema))
        self.onversionchange = None
        self.onclose = None
        self._close_pending = False
        self._transactions: set[SqliteTransaction] = set()

    def transaction(self, store_names: Any, mode: str = "readonly") -> "SqliteTransaction":
        if self._close_pending:
            raise HostRequestError(
                "The database connection is closing.", name="InvalidStateError"
            )
        running = self._engine.running
        if running is not None and running.mode == "versionchange" and not running._finished:
            raise HostRequestError(
                "A version change transaction is running.", name="InvalidStateError"
            )
        if mode not in MODES:
            raise TypeError(f"Invalid transaction mode: {mode!r}")
        names = [store_names] if isinstance(store_names, str) else list(store_names)
        if not names:
            raise HostRequestError(
                "The store name list is empty.", name="InvalidAccessError"
            )
        for name in names:
            if name not in self._schema:
                raise HostRequestError(
                    f"No objectStore named {name} in this database", name="NotFoundError"
                )
        tx = SqliteTransaction(self, sorted(set(names)), mode)
        self._transactions.add(tx)
        self._engine.schedule(tx)
        return tx

    def createObjectStore(self, name: str, options: Any = None) -> "SqliteObjectStore":
        tx = self._engine.running
        if tx is None or tx.mode != "versionchange" or tx.db is not self or tx._finished:
            raise HostRequestError(
                "createObjectStore requires a version change transaction",
                name="InvalidStateError",
            )
        if not tx._active:
            raise TransactionInactiveError()
        if name in self._schema:
            raise HostRequestError(
                f"Object store '{name}' already exists", name="ConstraintError"
            )
        key_path = _option(options, "keyPath")
        auto_increment = bool(_option(options, "autoIncrement", False))
        if key_path is not None and not isinstance(key_path, str):
            raise HostRequestError(
                f"Unsupported key path: {key_path!r}", name="InvalidAccessError"
            )
        if auto_increment and key_path == "":
            raise HostRequestError(
                "autoIncrement requires a non-empty key path", name="InvalidAccessError"
            )
        self._engine.sql.execute(
            "INSERT INTO idb_stores (name, key_path, auto_increment) VALUES (?, ?, ?)",
            (name, key_path, int(auto_increment)),
        )
        self._schema[name] = _StoreSchema(name, key_path, auto_increment)
        self.objectStoreNames.append(name)
        self.objectStoreNames.sort()
        tx.objectStoreNames.append(name)
        return SqliteObjectStore(tx, name)

    def close(self) -> None:
        if self._close_pending:
            return
        self._close_pending = True
        if not self._transactions:
            self._engine.finalize(self)

    def __repr__(self) -> str:
        return f"SqliteDatabase({self.name!r}, version={self.version})"


class SqliteTransaction:
    """IDBTransaction equivalent."""

    def __init__(self, db: SqliteDatabase, store_names: list[str], mode: str):
        self.db = db
        self.mode = mode
        self.objectStoreNames = DOMStringList(store_names)
        self.error = None
        self.oncomplete = None
        self.onerror = None
        self.onabort = None
        self._engine = db._engine
        self._requests: deque[tuple[Request, Callable[[], Any]]] = deque()
        self._active = True
        self._started = False
        self._finished = False
        self._pump_scheduled = False
        self._open_job: Optional[_OpenJob] = None
        if mode != "versionchange":
            self._engine.host.call_soon(self._deactivate)

    def objectStore(self, name: str) -> "SqliteObjectStore":
        if self._finished:
            raise HostRequestError("The transaction has finished.", name="InvalidStateError")
        if name not in self.objectStoreNames:
            raise HostRequestError(
                f"No objectStore named {name} in this transaction", name="NotFoundError"
            )
        return SqliteObjectStore(self, name)

    def abort(self) -> None:
        if self._finished:
            raise HostRequestError("The transaction has finished.", name="InvalidStateError")
        self._abort(TransactionAbortedError())

    def _ensure_active(self) -> None:
        if self._finished or not self._active:
            raise TransactionInactiveError()

    def _add_request(self, request: Request, operation: Callable[[], Any]) -> None:
        self._ensure_active()
        request.readyState = "pending"
        self._requests.append((request, operation))
        self._schedule_pump()

    def _deactivate(self) -> None:
        self._active = False
        self._schedule_pump()

    def _begin(self) -> None:
        if self._finished:
            return
        try:
            sql = self._engine.connect()
            sql.execute("BEGIN" if self.mode == "readonly" else "BEGIN IMMEDIATE")
        except sqlite3.Error as ex:
            self._abort(HostRequestError(str(ex), name="UnknownError"))
            return
        self._started = True
        self._schedule_pump()

    def _schedule_pump(self) -> None:
        if self._started and not self._finished and not self._pump_scheduled:
            self._pump_scheduled = True
            self._engine.host.call_soon(self._pump)

    def _pump(self) -> None:
        self._pump_scheduled = False
        if self._finished or not self._started:
            return
        if self._requests:
            request, operation = self._requests.popleft()
            try:
                result = operation()
            except HostRequestError as ex:
                self._request_failed(request, ex)
                return
            except Exception as ex:
                self._request_failed(
                    request, HostRequestError(f"{type(ex).__name__}: {ex}", name="UnknownError")
                )
                return
            self._active = True
            ok = request._succeed(result)
            self._active = False
            if not ok:
                self._abort(TransactionAbortedError("Exception raised in success handler"))
                return
            self._schedule_pump()
            return
        if self._active:
            return
        self._commit()

    def _request_failed(self, request: Request, error: HostRequestError) -> None:
        self._active = True
        request._fail(error)
        if not self._finished:
            _dispatch(self, "onerror", Event("error", request))
        self._active = False
        self._abort(error)

    def _commit(self) -> None:
        self._finished = True
        try:
            self._engine.sql.execute("COMMIT")
        except sqlite3.Error as ex:
            self._rollback()
            self.error = HostRequestError(str(ex), name="UnknownError")
            _dispatch(self, "onabort", Event("abort", self))
            self._engine.finished(self, False)
            return
        _dispatch(self, "oncomplete", Event("complete", self))
        self._engine.finished(self, True)

    def _rollback(self) -> None:
        sql = self._engine.sql
        if sql is not None and sql.in_transaction:
            try:
                sql.execute("ROLLBACK")
            except sqlite3.Error as ex:
                ui_log.error("sqlite_rollback_failed", database=self.db.name, error=str(ex))

    def _abort(self, error: HostRequestError) -> None:
        if self._finished:
            return
        self._finished = True
        if self._started:
            self._rollback()
        self.error = error
        pending = list(self._requests)
        self._requests.clear()
        for request, _ in pending:
            request._fail(TransactionAbortedError())
        _dispatch(self, "onabort", Event("abort", self))
        self._engine.finished(self, False)


class SqliteObjectStore:
    """IDBObjectStore equivalent."""

    def __init__(self, transaction: SqliteTransaction, name: str):
        self.transaction = transaction
        self.name = name
        self._schema = transaction.db._schema[name]

    @property
    def keyPath(self) -> Optional[str]:
        return self._schema.key_path

    @property
    def autoIncrement(self) -> bool:
        return self._schema.auto_increment

    @property
    def _engine(self) -> _Engine:
        return self.transaction._engine

    def _request(self) -> Request:
        return Request(source=self, transaction=self.transaction)

    def _check_writable(self) -> None:
        if self.transaction.mode == "readonly":
            raise HostRequestError("The transaction is read-only.", name="ReadOnlyError")

    def put(self, value: Any, key: Any = None) -> Request:
        self.transaction._ensure_active()
        self._check_writable()
        schema = self._schema
        if schema.key_path is not None and key is not None:
            raise DataError(
                f"Object store '{self.name}' uses in-line keys and the key parameter was provided"
            )
        if key is not None:
            key = normalize_key(key)
        elif schema.key_path is not None:
            found, inline = _extract_key_path(value, schema.key_path)
            if found:
                key = normalize_key(inline)
            elif not schema.auto_increment:
                raise DataError(
                    f"Evaluating the key path '{schema.key_path}' did not yield a value"
                )
            elif not _can_inject(value, schema.key_path):
                raise DataError(
                    f"A generated key cannot be injected at '{schema.key_path}'"
                )
        elif not schema.auto_increment:
            raise DataError(
                f"Object store '{self.name}' uses out-of-line keys and has no key "
                "generator and the key parameter was not provided"
            )
        data = _clone(value)
        request = self._request()

        def operation():
            effective = key
            payload = data
            if effective is None:
                effective = self._engine.generate_key(self.name)
                if schema.key_path is not None:
                    record = pickle.loads(payload)
                    _inject_key_path(record, schema.key_path, effective)
                    payload = _clone(record)
            elif schema.auto_increment:
                self._engine.bump_generator(self.name, effective)
            self._engine.sql.execute(
                "INSERT OR REPLACE INTO idb_records (store, key, value) VALUES (?, ?, ?)",
                (self.name, encode_key(effective), payload),
            )
            return effective

        self.transaction._add_request(request, operation)
        return request

    def get(self, query: Any) -> Request:
        self.transaction._ensure_active()
        if query is None:
            raise DataError("No key or key range specified")
        query = query if isinstance(query, KeyRange) else normalize_key(query)
        clause, params = _range_clause(query)
        request = self._request()

        def operation():
            row = self._engine.sql.execute(
                f"SELECT value FROM idb_records WHERE store = ? AND {clause} "
                "ORDER BY key LIMIT 1",
                [self.name, *params],
            ).fetchone()
            return pickle.loads(row[0]) if row is not None else None

        self.transaction._add_request(request, operation)
        return request

    def delete(self, query: Any) -> Request:
        self.transaction._ensure_active()
        self._check_writable()
        if query is None:
            raise DataError("No key or key range specified")
        query = query if isinstance(query, KeyRange) else normalize_key(query)
        clause, params = _range_clause(query)
        request = self._request()

        def operation():
            self._engine.sql.execute(
                f"DELETE FROM idb_records WHERE store = ? AND {clause}",
                [self.name, *params],
            )
            return None

        self.transaction._add_request(request, operation)
        return request

    def count(self, query: Any = None) -> Request:
        self.transaction._ensure_active()
        where = "store = ?"
        params: list = [self.name]
        if query is not None:
            query = query if isinstance(query, KeyRange) else normalize_key(query)
            clause, extra = _range_clause(query)
            where = f"{where} AND {clause}"
            params.extend(extra)
        request = self._request()

        def operation():
            row = self._engine.sql.execute(
                f"SELECT COUNT(*) FROM idb_records WHERE {where}", params
            ).fetchone()
            return int(row[0])

        self.transaction._add_request(request, operation)
        return request

    def openCursor(self, query: Any = None, direction: str = "next") -> Request:
        self.transaction._ensure_active()
        if direction not in DIRECTIONS:
            raise TypeError(f"Invalid cursor direction: {direction!r}")
        if query is not None and not isinstance(query, KeyRange):
            query = KeyRange.only(query)
        request = self._request()
        cursor = SqliteCursor(self, request, query, direction)
        self.transaction._add_request(request, cursor._advance)
        return request


class SqliteCursor:
    """IDBCursorWithValue equivalent. Object stores have unique keys, so the
    *unique directions behave like their plain counterparts."""

    def __init__(
        self,
        store: SqliteObjectStore,
        request: Request,
        key_range: Optional[KeyRange],
        direction: str,
    ):
        self.source = store
        self.request = request
        self.direction = direction
        self.key = None
        self.primaryKey = None
        self.value = None
        self._range = key_range
        self._position: Optional[bytes] = None
        self._exhausted = False

    def _advance(self) -> Optional["SqliteCursor"]:
        forward = self.direction.startswith("next")
        clauses = ["store = ?"]
        params: list = [self.source.name]
        if self._range is not None:
            clause, extra = _range_clause(self._range)
            clauses.append(clause)
            params.extend(extra)
        if self._position is not None:
            clauses.append("key > ?" if forward else "key < ?")
            params.append(self._position)
        order = "ASC" if forward else "DESC"
        row = self.source._engine.sql.execute(
            f"SELECT key, value FROM idb_records WHERE {' AND '.join(clauses)} "
            f"ORDER BY key {order} LIMIT 1",
            params,
        ).fetchone()
        if row is None:
            self._exhausted = True
            self.key = self.primaryKey = self.value = None
            return None
        self._position = bytes(row[0])
        self.key = self.primaryKey = decode_key(self._position)
        self.value = pickle.loads(row[1])
        return self

    def continue_(self) -> None:
        if self._exhausted:
            raise HostRequestError("The cursor is exhausted.", name="InvalidStateError")
        if self.request.readyState == "pending":
            raise HostRequestError(
                "The cursor is already iterating.", name="InvalidStateError"
            )
        self.source.transaction._add_request(self.request, self._advance)


# =============================================================================
# HOST
# =============================================================================


class SqliteHost(Host):
    """
    Host binding whose factory is a sqlite3-backed IndexedDB engine.

    Usage:
        host = SqliteHost(SqliteHostConfig(root=Path("/var/lib/app/idb")))
        service = IndexedDBService(descriptor, host=host)
    """

    name = "sqlite"

    def __init__(self, config: Optional[SqliteHostConfig] = None):
        self.config = config if config is not None else SqliteHostConfig.from_env()
        self._engines: dict[str, _Engine] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def factory(self) -> "SqliteHost":
        return self

    def call_soon(self, fn: Callable, *args) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            if self._loop is None or self._loop.is_closed():
                raise
        self._loop.call_soon(fn, *args)

    def _engine(self, name: str) -> _Engine:
        engine = self._engines.get(name)
        if engine is None:
            engine = self._engines[name] = _Engine(self, name)
        return engine

    def open(self, name: str, version: Optional[int] = None) -> OpenDBRequest:
        """Equivalent of indexedDB.open(name, version)."""
        if version is not None and (
            isinstance(version, bool) or not isinstance(version, int) or version < 1
        ):
            raise TypeError(f"Invalid database version: {version!r}")
        request = OpenDBRequest()
        self._engine(name).enqueue_open(_OpenJob(request, version))
        return request

    def deleteDatabase(self, name: str) -> OpenDBRequest:
        """Equivalent of indexedDB.deleteDatabase(name)."""
        request = OpenDBRequest()
        self._engine(name).enqueue_open(_OpenJob(request, None, delete=True))
        return request

    def close(self) -> None:
        """Abort outstanding work and release every sqlite handle, dropping in-memory databases."""
        for engine in self._engines.values():
            engine.shutdown()
        self._engines.clear()
