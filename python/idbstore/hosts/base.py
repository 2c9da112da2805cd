# -*- encoding: utf-8 -*-
"""
idbstore.hosts.base - binding between the service and a host engine.

A host engine exposes the IndexedDB request/transaction/cursor contract:
callbacks are assigned to on<event> attributes and fired later from the
event loop. A Host tells the service how to reach that engine (factory),
how to wrap Python callbacks for it (proxy) and how to convert values and
keys across the boundary.
"""

from __future__ import annotations

from typing import Any, Callable

from ..keys import KeyRange, normalize_key
from ..schema import StoreDescriptor


class PlainProxy:
    """Callable wrapper with the destroy() lifecycle of a Pyodide proxy."""

    __slots__ = ("_fn",)

    def __init__(self, fn: Callable):
        self._fn = fn

    def __call__(self, *args, **kwargs):
        fn = self._fn
        if fn is None:
            return None
        return fn(*args, **kwargs)

    def destroy(self) -> None:
        self._fn = None


class Host:
    """
    Base host binding.

    The defaults suit engines that speak Python natively: values and keys
    pass through unchanged and callbacks need no proxying beyond PlainProxy.
    """

    name = "host"

    @property
    def factory(self) -> Any:
        """Object offering open(name, version) and deleteDatabase(name)."""
        raise NotImplementedError

    def available(self) -> bool:
        return True

    def proxy(self, fn: Callable) -> Any:
        return PlainProxy(fn)

    def is_null(self, value: Any) -> bool:
        return value is None

    def to_host(self, value: Any) -> Any:
        return value

    def from_host(self, value: Any) -> Any:
        return None if self.is_null(value) else value

    def to_host_key(self, key: Any) -> Any:
        """Convert a key or KeyRange for the engine."""
        if isinstance(key, KeyRange):
            return key
        return normalize_key(key)

    def from_host_key(self, key: Any) -> Any:
        if self.is_null(key):
            return None
        return normalize_key(key)

    def store_options(self, store: StoreDescriptor) -> Any:
        options = {}
        if store.key_path is not None:
            options["keyPath"] = store.key_path
        if store.auto_increment:
            options["autoIncrement"] = True
        return options

    def store_names(self, db: Any) -> list[str]:
        return [str(name) for name in db.objectStoreNames]

    def contains_store(self, db: Any, name: str) -> bool:
        names = db.objectStoreNames
        if hasattr(names, "contains"):
            return bool(names.contains(name))
        return name in names
