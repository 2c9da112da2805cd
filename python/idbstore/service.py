# -*- encoding: utf-8 -*-
"""
idbstore.service - async key/value handle over one IndexedDB database.

Usage:
    descriptor = DatabaseDescriptor("app", 1, ["items", "notes"])
    service = IndexedDBService(descriptor)
    await service.open()
    await service.use_store("items").set("a", {"n": 1})
    value = await service.get("a")
    notes = service.store("notes")
    await notes.put("hello", "k1")
    service.close()

Every operation runs in its own host transaction. Transactions are never
held across awaits, so host auto-commit cannot cut an operation short.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from . import bridge, config, ui_log
from .errors import ErrorKind, IndexedDBServiceError
from .hosts import default_host
from .hosts.base import Host
from .schema import DatabaseDescriptor


class ConnectionState(Enum):
    """Lifecycle of an IndexedDBService connection."""

    CLOSED = "closed"
    OPENING = "opening"
    UPGRADING = "upgrading"
    OPEN = "open"


class TransactionMode(Enum):
    """IndexedDB transaction modes."""

    READONLY = "readonly"
    READWRITE = "readwrite"


class CursorDirection(Enum):
    """Cursor traversal directions."""

    NEXT = "next"
    NEXT_UNIQUE = "nextunique"
    PREV = "prev"
    PREV_UNIQUE = "prevunique"


def _host_error_name(ex: BaseException) -> Optional[str]:
    name = getattr(ex, "name", None)
    return str(name) if name is not None else None


def _describe(ex: BaseException) -> str:
    name = _host_error_name(ex)
    return f"{name}: {ex}" if name else f"{type(ex).__name__}: {ex}"


# =============================================================================
# DATABASE LIFECYCLE
# =============================================================================


async def open_database(
    descriptor: DatabaseDescriptor,
    *,
    host: Optional[Host] = None,
    timeout: Optional[float] = None,
    on_upgrade: Optional[Callable[[int, int], None]] = None,
) -> Any:
    """
    Open descriptor's database, creating missing stores during upgrade.

    Args:
        descriptor: database name, version and stores
        host: host binding (default_host() when None)
        timeout: seconds to wait for the open to settle
        on_upgrade: called with (old_version, new_version) before stores are created

    Returns:
        host connection (IDBDatabase-like)

    Raises:
        IndexedDBServiceError: OpenFailed, OpenBlocked or Timeout
    """
    host = host if host is not None else default_host()
    name = descriptor.name

    try:
        request = host.factory.open(name, descriptor.version)
    except Exception as ex:
        ui_log.error("database_open_failed", database=name, error=_describe(ex))
        raise IndexedDBServiceError(
            ErrorKind.OPEN_FAILED,
            f"Failed to open database '{name}': {_describe(ex)}",
            database=name,
            name=_host_error_name(ex),
        ) from ex

    loop = asyncio.get_event_loop()
    future = loop.create_future()
    handlers = bridge.HandlerSet(host)
    request_failed = False

    def on_upgrade_needed(event):
        """Called when the database is created or its version increases."""
        db = request.result
        old_version = int(event.oldVersion or 0)
        new_version = int(event.newVersion or descriptor.version)
        if on_upgrade is not None:
            on_upgrade(old_version, new_version)
        try:
            for store in descriptor.stores:
                if not host.contains_store(db, store.name):
                    db.createObjectStore(store.name, host.store_options(store))
        except Exception as ex:
            if not future.done():
                future.set_exception(ex)
            raise
        ui_log.info(
            "database_upgraded",
            database=name,
            old_version=old_version,
            new_version=new_version,
        )

    def on_blocked(event):
        """Called when other connections hold an older version open."""
        ui_log.warn("database_open_blocked", database=name, version=descriptor.version)
        if not future.done():
            future.set_exception(
                IndexedDBServiceError(
                    ErrorKind.OPEN_BLOCKED,
                    f"Database '{name}' upgrade blocked - close other sessions using this database",
                    database=name,
                    name="BlockedError",
                )
            )

    def on_success(event):
        if not future.done():
            future.set_result(request.result)

    def on_error(event):
        nonlocal request_failed
        request_failed = True
        if not future.done():
            future.set_exception(bridge.error_from(request.error, "Failed to open database"))

    try:
        handlers.attach(request, "onupgradeneeded", on_upgrade_needed)
        handlers.attach(request, "onblocked", on_blocked)
        handlers.attach(request, "onsuccess", on_success)
        handlers.attach(request, "onerror", on_error)
        return await bridge.settle(future, timeout, None)
    except IndexedDBServiceError:
        raise
    except TimeoutError as ex:
        ui_log.error("database_open_timeout", database=name, timeout=timeout)
        raise IndexedDBServiceError(
            ErrorKind.TIMEOUT,
            f"Opening database '{name}' timed out after {timeout}s",
            database=name,
        ) from ex
    except Exception as ex:
        ui_log.error("database_open_failed", database=name, error=_describe(ex))
        raise IndexedDBServiceError(
            ErrorKind.OPEN_FAILED,
            f"Failed to open database '{name}': {_describe(ex)}",
            database=name,
            name=_host_error_name(ex),
        ) from ex
    finally:
        handlers.release()
        if not (future.done() and not future.cancelled() and future.exception() is None):
            if not request_failed:
                _discard_late_open(host, request, name)


def _discard_late_open(host: Host, request: Any, name: str) -> None:
    """
    Keep watching an abandoned open request.

    A late upgrade is aborted so the version is not bumped without its stores,
    and a late connection is closed so it cannot block later opens.
    """
    loop = asyncio.get_event_loop()
    late = bridge.HandlerSet(host)

    def on_upgrade_needed(event):
        bridge.abort_transaction(request.transaction)

    def on_success(event):
        db = request.result
        if not host.is_null(db):
            db.close()
            ui_log.info("late_connection_closed", database=name)
        loop.call_soon(late.release)

    def on_error(event):
        loop.call_soon(late.release)

    late.attach(request, "onupgradeneeded", on_upgrade_needed)
    late.attach(request, "onblocked", lambda event: None)
    late.attach(request, "onsuccess", on_success)
    late.attach(request, "onerror", on_error)


async def delete_database(
    name: str, *, host: Optional[Host] = None, timeout: Optional[float] = None
) -> None:
    """
    Delete a whole database.

    WARNING: This is destructive and cannot be undone. A blocked deletion
    raises OpenBlocked but stays queued on the host, and completes once the
    other connections close.

    Raises:
        IndexedDBServiceError: OpenBlocked, OperationFailed or Timeout
    """
    host = host if host is not None else default_host()
    loop = asyncio.get_event_loop()
    future = loop.create_future()
    handlers = bridge.HandlerSet(host)

    def on_blocked(event):
        ui_log.warn("database_delete_blocked", database=name)
        if not future.done():
            future.set_exception(
                IndexedDBServiceError(
                    ErrorKind.OPEN_BLOCKED,
                    f"Deleting database '{name}' is blocked by open connections",
                    database=name,
                    name="BlockedError",
                )
            )

    def on_success(event):
        if not future.done():
            future.set_result(None)

    def on_error(event):
        if not future.done():
            future.set_exception(bridge.error_from(request.error, "Failed to delete database"))

    try:
        request = host.factory.deleteDatabase(name)
        handlers.attach(request, "onblocked", on_blocked)
        handlers.attach(request, "onsuccess", on_success)
        handlers.attach(request, "onerror", on_error)
        await bridge.settle(future, timeout, None)
    except IndexedDBServiceError:
        raise
    except TimeoutError as ex:
        raise IndexedDBServiceError(
            ErrorKind.TIMEOUT, f"Deleting database '{name}' timed out", database=name
        ) from ex
    except Exception as ex:
        raise IndexedDBServiceError(
            ErrorKind.OPERATION_FAILED,
            f"Failed to delete database '{name}': {_describe(ex)}",
            database=name,
            name=_host_error_name(ex),
        ) from ex
    finally:
        handlers.release()
    ui_log.info("database_deleted", database=name)


# =============================================================================
# SERVICE
# =============================================================================


class IndexedDBService:
    """
    Async handle over one database with a selectable current store.

    The handle is not usable until open() resolves. Operations act on the
    store chosen with use_store(); store(name) returns a BoundStore that
    never depends on the mutable selection.
    """

    def __init__(
        self,
        descriptor: DatabaseDescriptor,
        *,
        host: Optional[Host] = None,
        timeout: Optional[float] = None,
        close_on_version_change: bool = False,
    ):
        """
        Args:
            descriptor: database name, version and stores
            host: host binding (default_host() when None)
            timeout: per-operation timeout in seconds (IDBSTORE_TIMEOUT when None)
            close_on_version_change: close this handle when another session
                requests a newer version, letting its upgrade proceed
        """
        if not isinstance(descriptor, DatabaseDescriptor):
            raise TypeError(
                f"descriptor must be a DatabaseDescriptor, got {type(descriptor).__name__}"
            )
        self.descriptor = descriptor
        self.host = host if host is not None else default_host()
        self.timeout = timeout if timeout is not None else config.operation_timeout()
        self.close_on_version_change = close_on_version_change
        self._db = None
        self._state = ConnectionState.CLOSED
        self._selected: Optional[str] = None
        self._opening: Optional[asyncio.Future] = None
        self._close_requested = False
        self._versionchange_proxy = None

    # Properties

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def version(self) -> int:
        if self._db is not None:
            return int(self._db.version)
        return self.descriptor.version

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def store_names(self) -> list[str]:
        if self._db is not None:
            return self.host.store_names(self._db)
        return self.descriptor.store_names

    @property
    def selected_store(self) -> Optional[str]:
        return self._selected

    def __repr__(self) -> str:
        return (
            f"IndexedDBService({self.name!r}, version={self.version}, "
            f"state={self._state.value}, store={self._selected!r})"
        )

    # Lifecycle

    async def open(self) -> None:
        """
        Open the connection. Idempotent; concurrent calls share one open.

        Raises:
            IndexedDBServiceError: OpenFailed, OpenBlocked or Timeout, or
                NotInitialized when close() was called before the open settled
        """
        if self._db is not None:
            return
        if self._opening is None:
            self._close_requested = False
            self._opening = asyncio.ensure_future(self._open())
        opening = self._opening
        try:
            await opening
        finally:
            if self._opening is opening and opening.done():
                self._opening = None

    async def _open(self) -> None:
        self._state = ConnectionState.OPENING
        ui_log.debug("database_opening", database=self.name, version=self.descriptor.version)
        try:
            db = await open_database(
                self.descriptor,
                host=self.host,
                timeout=self.timeout,
                on_upgrade=self._on_upgrade,
            )
        except BaseException:
            self._state = ConnectionState.CLOSED
            raise
        if self._close_requested:
            self._close_requested = False
            self._state = ConnectionState.CLOSED
            db.close()
            ui_log.info("database_closed_while_opening", database=self.name)
            raise IndexedDBServiceError(
                ErrorKind.NOT_INITIALIZED,
                f"Database '{self.name}' was closed while opening",
                database=self.name,
            )
        self._db = db
        self._state = ConnectionState.OPEN
        self._versionchange_proxy = self.host.proxy(self._on_version_change)
        db.onversionchange = self._versionchange_proxy
        ui_log.info(
            "database_opened",
            database=self.name,
            version=self.version,
            stores=self.store_names,
        )

    def _on_upgrade(self, old_version: int, new_version: int) -> None:
        self._state = ConnectionState.UPGRADING

    def _on_version_change(self, event) -> None:
        ui_log.info(
            "database_version_change",
            database=self.name,
            old_version=event.oldVersion,
            new_version=event.newVersion,
            closing=self.close_on_version_change,
        )
        if self.close_on_version_change:
            self.close()

    def close(self) -> None:
        """Release the connection. Idempotent; the host finishes queued work."""
        db, self._db = self._db, None
        self._state = ConnectionState.CLOSED
        if self._opening is not None and not self._opening.done():
            self._close_requested = True
        if db is None:
            return
        db.onversionchange = None
        if self._versionchange_proxy is not None:
            self._versionchange_proxy.destroy()
            self._versionchange_proxy = None
        db.close()
        ui_log.info("database_closed", database=self.name)

    async def __aenter__(self) -> "IndexedDBService":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # Store selection

    def _require_open(self) -> Any:
        if self._db is None or self._state is not ConnectionState.OPEN:
            raise IndexedDBServiceError(
                ErrorKind.NOT_INITIALIZED,
                f"Database '{self.name}' is not open - call open() first",
                database=self.name,
            )
        return self._db

    def _check_store(self, name: str) -> None:
        db = self._require_open()
        if not isinstance(name, str) or not self.host.contains_store(db, name):
            raise IndexedDBServiceError(
                ErrorKind.STORE_NOT_FOUND,
                f"Store '{name}' not found in database '{self.name}'",
                database=self.name,
                store=name if isinstance(name, str) else None,
            )

    def use_store(self, name: str) -> "IndexedDBService":
        """
        Select the store used by subsequent operations.

        Returns:
            self, for chaining

        Raises:
            IndexedDBServiceError: NotInitialized or StoreNotFound
        """
        self._check_store(name)
        self._selected = name
        ui_log.debug("store_selected", database=self.name, store=name)
        return self

    def store(self, name: str) -> "BoundStore":
        """
        Return a session bound to one store, independent of use_store().

        Raises:
            IndexedDBServiceError: NotInitialized or StoreNotFound
        """
        self._check_store(name)
        return BoundStore(self, name)

    # Operations on the selected store

    async def put(self, value: Any, key: Any = None) -> Any:
        """
        Insert or replace a record.

        Args:
            value: record value
            key: record key; omit for stores with a key path or key generator

        Returns:
            effective key of the stored record
        """
        return await self._put(self._selected, value, key)

    async def set(self, key: Any, value: Any) -> Any:
        return await self._put(self._selected, value, key)

    async def get(self, query: Any) -> Any:
        """Return the first value matching a key or KeyRange, or None."""
        return await self._get(self._selected, query)

    async def delete(self, query: Any) -> None:
        """Delete records matching a key or KeyRange; missing keys are not an error."""
        await self._delete(self._selected, query)

    async def get_map(
        self,
        limit: int = config.DEFAULT_GET_MAP_LIMIT,
        direction: CursorDirection | str = CursorDirection.NEXT,
    ) -> dict:
        """
        Return up to limit entries in cursor order.

        Raises:
            ValueError: negative limit or unknown direction
            IndexedDBServiceError: the cursor failed; partial results are discarded
        """
        return await self._get_map(self._selected, limit, direction)

    async def count(self, query: Any = None) -> int:
        return await self._count(self._selected, query)

    # Internals shared with BoundStore

    def _connection(self, store: Optional[str]) -> Any:
        db = self._require_open()
        if store is None:
            raise IndexedDBServiceError(
                ErrorKind.STORE_NOT_SELECTED,
                f"No store selected on database '{self.name}' - call use_store() first",
                database=self.name,
            )
        return db

    def _failure(
        self, action: str, ex: BaseException, store: Optional[str], key: Any = None
    ) -> IndexedDBServiceError:
        if isinstance(ex, TimeoutError):
            kind = ErrorKind.TIMEOUT
            message = f"{action} on '{self.name}/{store}' timed out after {self.timeout}s"
        else:
            kind = ErrorKind.OPERATION_FAILED
            message = f"{action} on '{self.name}/{store}' failed: {_describe(ex)}"
        ui_log.warn(
            "operation_failed",
            database=self.name,
            store=store,
            action=action,
            kind=kind.value,
            error=_describe(ex),
        )
        return IndexedDBServiceError(
            kind,
            message,
            database=self.name,
            store=store,
            key=key,
            name=None if kind is ErrorKind.TIMEOUT else _host_error_name(ex),
        )

    async def _put(
        self, store: Optional[str], value: Any, key: Any = None, *, durable: bool = False
    ) -> Any:
        db = self._connection(store)
        host = self.host
        try:
            tx = db.transaction(store, TransactionMode.READWRITE.value)
            object_store = tx.objectStore(store)
            if key is None:
                request = object_store.put(host.to_host(value))
            else:
                request = object_store.put(host.to_host(value), host.to_host_key(key))
            if durable:
                result = await bridge.await_transaction(
                    host, tx, request=request, timeout=self.timeout
                )
            else:
                result = await bridge.await_request(
                    host, request, transaction=tx, timeout=self.timeout
                )
        except Exception as ex:
            raise self._failure("put", ex, store, key) from ex
        return host.from_host_key(result)

    async def _get(self, store: Optional[str], query: Any) -> Any:
        db = self._connection(store)
        host = self.host
        try:
            tx = db.transaction(store, TransactionMode.READONLY.value)
            request = tx.objectStore(store).get(host.to_host_key(query))
            result = await bridge.await_request(
                host, request, transaction=tx, timeout=self.timeout
            )
        except Exception as ex:
            raise self._failure("get", ex, store, query) from ex
        return host.from_host(result)

    async def _delete(self, store: Optional[str], query: Any) -> None:
        db = self._connection(store)
        host = self.host
        try:
            tx = db.transaction(store, TransactionMode.READWRITE.value)
            request = tx.objectStore(store).delete(host.to_host_key(query))
            await bridge.await_transaction(host, tx, request=request, timeout=self.timeout)
        except Exception as ex:
            raise self._failure("delete", ex, store, query) from ex

    async def _count(self, store: Optional[str], query: Any = None) -> int:
        db = self._connection(store)
        host = self.host
        try:
            tx = db.transaction(store, TransactionMode.READONLY.value)
            object_store = tx.objectStore(store)
            if query is None:
                request = object_store.count()
            else:
                request = object_store.count(host.to_host_key(query))
            result = await bridge.await_request(
                host, request, transaction=tx, timeout=self.timeout
            )
        except Exception as ex:
            raise self._failure("count", ex, store, query) from ex
        return int(result or 0)

    async def _get_map(
        self,
        store: Optional[str],
        limit: int = config.DEFAULT_GET_MAP_LIMIT,
        direction: CursorDirection | str = CursorDirection.NEXT,
    ) -> dict:
        db = self._connection(store)
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError(f"limit must be an int, got {limit!r}")
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        direction = CursorDirection(direction)
        if limit == 0:
            return {}

        host = self.host
        entries: dict = {}

        def on_item(cursor) -> bool:
            entries[host.from_host_key(cursor.key)] = host.from_host(cursor.value)
            return len(entries) < limit

        try:
            tx = db.transaction(store, TransactionMode.READONLY.value)
            request = tx.objectStore(store).openCursor(None, direction.value)
            await bridge.walk_cursor(
                host, request, on_item, transaction=tx, timeout=self.timeout
            )
        except Exception as ex:
            raise self._failure("get_map", ex, store) from ex
        return entries


@dataclass(frozen=True)
class BoundStore:
    """Session bound to one store of an IndexedDBService."""

    service: IndexedDBService
    name: str

    async def put(self, value: Any, key: Any = None) -> Any:
        return await self.service._put(self.name, value, key)

    async def set(self, key: Any, value: Any) -> Any:
        return await self.service._put(self.name, value, key)

    async def get(self, query: Any) -> Any:
        return await self.service._get(self.name, query)

    async def delete(self, query: Any) -> None:
        await self.service._delete(self.name, query)

    async def get_map(
        self,
        limit: int = config.DEFAULT_GET_MAP_LIMIT,
        direction: CursorDirection | str = CursorDirection.NEXT,
    ) -> dict:
        return await self.service._get_map(self.name, limit, direction)

    async def count(self, query: Any = None) -> int:
        return await self.service._count(self.name, query)


__all__ = [
    "BoundStore",
    "ConnectionState",
    "CursorDirection",
    "IndexedDBService",
    "TransactionMode",
    "delete_database",
    "open_database",
]
