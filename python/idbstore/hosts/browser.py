# -*- encoding: utf-8 -*-
"""
idbstore.hosts.browser - the browser's native IndexedDB under Pyodide/PyScript.

Memory Safety:
- Callbacks are wrapped with create_proxy() and destroyed by the event
  bridge once the owning future settles.
- Values are converted with to_js()/to_py() so stored records are plain JS
  objects (structured clone), not Python proxies.
"""

from __future__ import annotations

import datetime
from typing import Any, Callable

# Pyodide/PyScript browser environment imports
try:
    from js import Date, IDBKeyRange, Object, indexedDB
    from pyodide.ffi import create_proxy, to_js
except ImportError:
    indexedDB = None
    IDBKeyRange = None
    Object = None
    Date = None
    create_proxy = None
    to_js = None

from ..errors import HostRequestError
from ..keys import KeyRange, normalize_key
from ..schema import StoreDescriptor
from .base import Host


def _is_js_null(value: Any) -> bool:
    """Return True if value represents JS null/undefined in Pyodide."""
    if value is None:
        return True
    tname = type(value).__name__
    if tname in ("JsNull", "JsUndefined"):
        return True
    try:
        return str(value) == "null"
    except Exception:
        return False


class BrowserHost(Host):
    """Host binding for window.indexedDB."""

    name = "browser"

    @property
    def factory(self) -> Any:
        if indexedDB is None:
            raise HostRequestError(
                "IndexedDB not available - not running in browser environment",
                name="NotSupportedError",
            )
        return indexedDB

    def available(self) -> bool:
        return indexedDB is not None

    def proxy(self, fn: Callable) -> Any:
        return create_proxy(fn)

    def is_null(self, value: Any) -> bool:
        return _is_js_null(value)

    def to_host(self, value: Any) -> Any:
        if value is None:
            return None
        return to_js(value, dict_converter=Object.fromEntries)

    def from_host(self, value: Any) -> Any:
        if _is_js_null(value):
            return None
        if hasattr(value, "to_py"):
            return value.to_py()
        return value

    def to_host_key(self, key: Any) -> Any:
        if isinstance(key, KeyRange):
            return self._key_range(key)
        return self._key(normalize_key(key))

    def _key(self, key: Any) -> Any:
        if isinstance(key, datetime.datetime):
            return Date.new(key.timestamp() * 1000)
        if isinstance(key, bytes):
            return to_js(key)
        if isinstance(key, tuple):
            return to_js([self._key(item) for item in key])
        return key

    def _key_range(self, key_range: KeyRange) -> Any:
        if key_range.is_single:
            return IDBKeyRange.only(self._key(key_range.lower))
        if key_range.upper is None:
            return IDBKeyRange.lowerBound(
                self._key(key_range.lower), key_range.lower_open
            )
        if key_range.lower is None:
            return IDBKeyRange.upperBound(
                self._key(key_range.upper), key_range.upper_open
            )
        return IDBKeyRange.bound(
            self._key(key_range.lower),
            self._key(key_range.upper),
            key_range.lower_open,
            key_range.upper_open,
        )

    def from_host_key(self, key: Any) -> Any:
        if _is_js_null(key):
            return None
        constructor = getattr(getattr(key, "constructor", None), "name", None)
        if constructor == "Date":
            return datetime.datetime.fromtimestamp(
                key.getTime() / 1000, tz=datetime.timezone.utc
            )
        if constructor == "Array":
            return tuple(self.from_host_key(item) for item in key)
        if constructor in ("Uint8Array", "ArrayBuffer"):
            result = key.to_py()
            return result.tobytes() if hasattr(result, "tobytes") else bytes(result)
        return normalize_key(key)

    def store_options(self, store: StoreDescriptor) -> Any:
        return to_js(super().store_options(store), dict_converter=Object.fromEntries)
