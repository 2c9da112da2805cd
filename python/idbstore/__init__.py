# -*- encoding: utf-8 -*-
"""
idbstore - async key/value storage over IndexedDB.

Runs against the browser's indexedDB under Pyodide/PyScript, or against an
IndexedDB-compatible sqlite3 engine under CPython.
"""

from __future__ import annotations

from .cache import IndexedDBCache
from .config import DEFAULT_GET_MAP_LIMIT, load_descriptor
from .errors import ErrorKind, IndexedDBServiceError
from .hosts import BrowserHost, Host, SqliteHost, SqliteHostConfig, default_host
from .keys import KeyRange
from .schema import DatabaseDescriptor, StoreDescriptor
from .service import (
    BoundStore,
    ConnectionState,
    CursorDirection,
    IndexedDBService,
    TransactionMode,
    delete_database,
    open_database,
)

__all__ = [
    "DEFAULT_GET_MAP_LIMIT",
    "BoundStore",
    "BrowserHost",
    "ConnectionState",
    "CursorDirection",
    "DatabaseDescriptor",
    "ErrorKind",
    "Host",
    "IndexedDBCache",
    "IndexedDBService",
    "IndexedDBServiceError",
    "KeyRange",
    "SqliteHost",
    "SqliteHostConfig",
    "StoreDescriptor",
    "TransactionMode",
    "default_host",
    "delete_database",
    "load_descriptor",
    "open_database",
]
