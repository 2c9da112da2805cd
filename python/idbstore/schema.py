# -*- encoding: utf-8 -*-
"""
idbstore.schema - database and store descriptors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class StoreDescriptor:
    """
    Object store declared by a database schema.

    Created during the upgrade phase if it does not exist yet.

    Attributes:
        name: store name
        key_path: dotted path into dict values for inline keys, or None for
            out-of-line keys
        auto_increment: attach a key generator to the store
    """

    name: str
    key_path: Optional[str] = None
    auto_increment: bool = False

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ValueError(f"Store name must be a non-empty string, got {self.name!r}")
        if self.key_path is not None and (
            not isinstance(self.key_path, str) or not self.key_path
        ):
            raise ValueError(f"Invalid key path for store '{self.name}': {self.key_path!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StoreDescriptor":
        return cls(
            name=data["name"],
            key_path=data.get("key_path"),
            auto_increment=bool(data.get("auto_increment", False)),
        )


@dataclass(frozen=True)
class DatabaseDescriptor:
    """
    Versioned database and the stores that must exist in it.

    Attributes:
        name: host database name
        version: schema version; bump it when adding stores
        stores: declared stores, created in order during upgrade
    """

    name: str
    version: int = 1
    stores: tuple[StoreDescriptor, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ValueError(f"Database name must be a non-empty string, got {self.name!r}")
        if (
            isinstance(self.version, bool)
            or not isinstance(self.version, int)
            or self.version < 1
        ):
            raise ValueError(
                f"Database version must be a positive integer, got {self.version!r}"
            )
        stores = tuple(
            store if isinstance(store, StoreDescriptor) else StoreDescriptor(store)
            for store in self.stores
        )
        names = [store.name for store in stores]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(
                f"Duplicate store names in database '{self.name}': {duplicates}"
            )
        object.__setattr__(self, "stores", stores)

    @property
    def store_names(self) -> list[str]:
        return [store.name for store in self.stores]

    def store(self, name: str) -> Optional[StoreDescriptor]:
        for store in self.stores:
            if store.name == name:
                return store
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DatabaseDescriptor":
        """
        Build a descriptor from plain data.

        Stores may be given as names or as mappings with name, key_path and
        auto_increment.
        """
        stores = []
        for entry in data.get("stores", ()):
            if isinstance(entry, str):
                stores.append(StoreDescriptor(entry))
            else:
                stores.append(StoreDescriptor.from_dict(entry))
        return cls(
            name=data["name"],
            version=data.get("version", 1),
            stores=tuple(stores),
        )
