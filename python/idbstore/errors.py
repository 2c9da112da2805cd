# -*- encoding: utf-8 -*-
"""
idbstore.errors - failure taxonomy.

Public failures are a single exception type, IndexedDBServiceError, tagged
with an ErrorKind. Host-level failures (HostRequestError and subclasses) are
raised by host bindings and the event bridge and are chained as __cause__
when the service translates them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """Named failure conditions surfaced by IndexedDBService."""

    NOT_INITIALIZED = "NotInitialized"
    STORE_NOT_SELECTED = "StoreNotSelected"
    STORE_NOT_FOUND = "StoreNotFound"
    OPEN_FAILED = "OpenFailed"
    OPEN_BLOCKED = "OpenBlocked"
    OPERATION_FAILED = "OperationFailed"
    TIMEOUT = "Timeout"


_PROGRAMMING_ERRORS = frozenset(
    {
        ErrorKind.NOT_INITIALIZED,
        ErrorKind.STORE_NOT_SELECTED,
        ErrorKind.STORE_NOT_FOUND,
    }
)


class IndexedDBServiceError(Exception):
    """
    Failure of a service call.

    Attributes:
        kind: ErrorKind tag
        database: database name, when known
        store: store name, when known
        key: key or query involved, when known
        name: host DOMException-style name (e.g. "DataError"), when known
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        database: Optional[str] = None,
        store: Optional[str] = None,
        key: Any = None,
        name: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.database = database
        self.store = store
        self.key = key
        self.name = name

    @property
    def is_programming_error(self) -> bool:
        """True for call-order or configuration mistakes, False for environment conditions."""
        return self.kind in _PROGRAMMING_ERRORS

    def __repr__(self) -> str:
        return f"IndexedDBServiceError({self.kind.value}, {str(self)!r})"


class HostRequestError(Exception):
    """Request-level error with optional DOMException name."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class DataError(HostRequestError):
    """Invalid key, key range or key/key-path combination."""

    def __init__(self, message: str):
        super().__init__(message, name="DataError")


class TransactionInactiveError(HostRequestError):
    """Request placed on a transaction that is no longer active."""

    def __init__(self, message: str = "Transaction is not active"):
        super().__init__(message, name="TransactionInactiveError")


class TransactionAbortedError(HostRequestError):
    """Transaction was aborted."""

    def __init__(self, message: str = "Transaction aborted"):
        super().__init__(message, name="AbortError")
