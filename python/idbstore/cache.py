# -*- encoding: utf-8 -*-
"""
idbstore.cache - single-store key/value cache.

Usage:
    cache = IndexedDBCache("thumbnails")
    await cache.init()
    await cache.set("https://example.org/a.png", data)
    data = await cache.get("https://example.org/a.png")
"""

from __future__ import annotations

from typing import Any, Optional

from . import config
from .hosts.base import Host
from .schema import DatabaseDescriptor, StoreDescriptor
from .service import CursorDirection, IndexedDBService

DEFAULT_DB_NAME = "db"
DEFAULT_STORE_NAME = "store"


class IndexedDBCache:
    """
    One database holding one store, opened at version 1.

    Writes resolve only after their transaction has committed.
    """

    def __init__(
        self,
        db_name: str = DEFAULT_DB_NAME,
        store_name: str = DEFAULT_STORE_NAME,
        *,
        key_path: Optional[str] = None,
        auto_increment: bool = False,
        host: Optional[Host] = None,
        timeout: Optional[float] = None,
    ):
        self.store_name = store_name
        descriptor = DatabaseDescriptor(
            db_name,
            1,
            [StoreDescriptor(store_name, key_path=key_path, auto_increment=auto_increment)],
        )
        self._service = IndexedDBService(descriptor, host=host, timeout=timeout)

    @property
    def db_name(self) -> str:
        return self._service.name

    @property
    def is_open(self) -> bool:
        return self._service.is_open

    async def init(self) -> None:
        """Open the database, creating the store on first use. Idempotent."""
        await self._service.open()

    async def put(self, value: Any, key: Any = None) -> Any:
        """Store value and return its key once the write has committed."""
        return await self._service._put(self.store_name, value, key, durable=True)

    async def set(self, key: Any, value: Any) -> Any:
        return await self.put(value, key)

    async def get(self, query: Any) -> Any:
        return await self._service._get(self.store_name, query)

    async def get_map(
        self,
        limit: int = config.DEFAULT_GET_MAP_LIMIT,
        direction: CursorDirection | str = CursorDirection.NEXT,
    ) -> dict:
        return await self._service._get_map(self.store_name, limit, direction)

    async def delete(self, query: Any) -> None:
        await self._service._delete(self.store_name, query)

    def close(self) -> None:
        self._service.close()
