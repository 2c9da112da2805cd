# -*- encoding: utf-8 -*-
"""
test_service.py - lifecycle, error taxonomy and concurrency of IndexedDBService.
"""

from __future__ import annotations

import asyncio
import dataclasses

import pytest

from idbstore import (
    ConnectionState,
    DatabaseDescriptor,
    ErrorKind,
    IndexedDBCache,
    IndexedDBService,
    IndexedDBServiceError,
    SqliteHost,
    SqliteHostConfig,
    StoreDescriptor,
    delete_database,
)
from idbstore.errors import HostRequestError
from idbstore.hosts.sqlite import Request, SqliteCursor, SqliteObjectStore

from .suite import expect_error

V1 = DatabaseDescriptor("app", 1, ["items"])
V2 = DatabaseDescriptor("app", 2, ["items", "notes"])


def _messages(entries):
    return [entry["msg"] for entry in entries]


# =============================================================================
# LIFECYCLE
# =============================================================================


def test_open_close_states(memory_host, log_entries):
    async def scenario():
        service = IndexedDBService(V1, host=memory_host)
        assert service.state is ConnectionState.CLOSED
        assert not service.is_open

        await service.open()
        assert service.state is ConnectionState.OPEN
        assert service.version == 1
        assert service.store_names == ["items"]

        service.close()
        service.close()
        assert service.state is ConnectionState.CLOSED

    asyncio.run(scenario())
    assert "database_upgraded" in _messages(log_entries)
    assert _messages(log_entries).count("database_closed") == 1


def test_state_is_upgrading_during_upgrade(memory_host):
    seen = []

    async def scenario():
        service = IndexedDBService(V1, host=memory_host)
        original = service._on_upgrade

        def record(old_version, new_version):
            original(old_version, new_version)
            seen.append((service.state, old_version, new_version))

        service._on_upgrade = record
        await service.open()
        service.close()

    asyncio.run(scenario())
    assert seen == [(ConnectionState.UPGRADING, 0, 1)]


def test_concurrent_opens_share_one_connection(memory_host):
    async def scenario():
        service = IndexedDBService(V1, host=memory_host)
        await asyncio.gather(service.open(), service.open(), service.open())
        db = service._db
        await service.open()
        assert service._db is db
        assert len(memory_host._engine("app").connections) == 1
        service.close()

    asyncio.run(scenario())


def test_repeat_opens_upgrade_once(memory_host, log_entries):
    async def scenario():
        service = IndexedDBService(V1, host=memory_host)
        await service.open()
        await service.open()
        service.close()
        await service.open()
        assert service.version == 1
        service.close()

    asyncio.run(scenario())
    messages = _messages(log_entries)
    assert messages.count("database_upgraded") == 1
    assert messages.count("database_opened") == 2


def test_close_while_opening_releases_connection(memory_host):
    async def scenario():
        service = IndexedDBService(V1, host=memory_host)
        opening = asyncio.ensure_future(service.open())
        await asyncio.sleep(0)
        service.close()

        ex = await expect_error(ErrorKind.NOT_INITIALIZED, opening)
        assert ex.database == "app"
        assert service.state is ConnectionState.CLOSED
        assert memory_host._engine("app").connections == []
        await expect_error(ErrorKind.NOT_INITIALIZED, service.get("k"))

        await service.open()
        assert service.is_open
        assert len(memory_host._engine("app").connections) == 1
        service.close()

    asyncio.run(scenario())


def test_context_manager_opens_and_closes(memory_host):
    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            assert service.is_open
            await service.use_store("items").set("k", "v")
        assert service.state is ConnectionState.CLOSED

    asyncio.run(scenario())


def test_upgrade_adds_stores_and_keeps_data(file_host, log_entries):
    async def scenario():
        async with IndexedDBService(V1, host=file_host) as service:
            await service.use_store("items").set("k", "kept")

        async with IndexedDBService(V2, host=file_host) as service:
            assert service.version == 2
            assert service.store_names == ["items", "notes"]
            assert await service.use_store("items").get("k") == "kept"

    asyncio.run(scenario())
    upgrades = [e["fields"] for e in log_entries if e["msg"] == "database_upgraded"]
    assert [(u["old_version"], u["new_version"]) for u in upgrades] == [(0, 1), (1, 2)]


def test_data_persists_across_hosts(tmp_path):
    async def write():
        host = SqliteHost(SqliteHostConfig(root=tmp_path))
        async with IndexedDBService(V1, host=host) as service:
            await service.use_store("items").set(("a", 1), {"n": 1})
        host.close()

    async def read():
        host = SqliteHost(SqliteHostConfig(root=tmp_path))
        async with IndexedDBService(V1, host=host) as service:
            value = await service.use_store("items").get(("a", 1))
        host.close()
        return value

    asyncio.run(write())
    assert asyncio.run(read()) == {"n": 1}


# =============================================================================
# ERROR TAXONOMY
# =============================================================================


def test_operations_before_open_fail_not_initialized(memory_host):
    async def scenario():
        service = IndexedDBService(V1, host=memory_host)
        with pytest.raises(IndexedDBServiceError) as excinfo:
            service.use_store("items")
        assert excinfo.value.kind is ErrorKind.NOT_INITIALIZED
        assert excinfo.value.is_programming_error

        ex = await expect_error(ErrorKind.NOT_INITIALIZED, service.get("k"))
        assert ex.database == "app"
        await expect_error(ErrorKind.NOT_INITIALIZED, service.put("v", "k"))

    asyncio.run(scenario())


def test_operations_without_store_fail_store_not_selected(memory_host):
    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            ex = await expect_error(ErrorKind.STORE_NOT_SELECTED, service.get_map())
            assert ex.is_programming_error
            await expect_error(ErrorKind.STORE_NOT_SELECTED, service.delete("k"))
            await expect_error(ErrorKind.STORE_NOT_SELECTED, service.count())

    asyncio.run(scenario())


def test_unknown_store_fails_store_not_found(memory_host):
    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            for select in (service.use_store, service.store):
                with pytest.raises(IndexedDBServiceError) as excinfo:
                    select("missing")
                assert excinfo.value.kind is ErrorKind.STORE_NOT_FOUND
                assert excinfo.value.store == "missing"
            assert service.selected_store is None

    asyncio.run(scenario())


def test_lower_version_fails_open(memory_host):
    async def scenario():
        async with IndexedDBService(V2, host=memory_host):
            pass
        service = IndexedDBService(V1, host=memory_host)
        ex = await expect_error(ErrorKind.OPEN_FAILED, service.open())
        assert ex.name == "VersionError"
        assert isinstance(ex.__cause__, HostRequestError)
        assert not ex.is_programming_error
        assert service.state is ConnectionState.CLOSED

    asyncio.run(scenario())


def test_invalid_key_fails_operation(memory_host):
    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            service.use_store("items")
            ex = await expect_error(ErrorKind.OPERATION_FAILED, service.put("v", float("nan")))
            assert ex.name == "DataError"
            assert ex.store == "items"
            ex = await expect_error(ErrorKind.OPERATION_FAILED, service.put(lambda: None, "k"))
            assert ex.name == "DataCloneError"
            await expect_error(ErrorKind.OPERATION_FAILED, service.get(None))
            assert await service.count() == 0

    asyncio.run(scenario())


def test_get_map_argument_validation(memory_host):
    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            service.use_store("items")
            with pytest.raises(ValueError):
                await service.get_map(limit=-1)
            with pytest.raises(ValueError):
                await service.get_map(direction="sideways")

    asyncio.run(scenario())


def test_cursor_error_discards_partial_results(memory_host, monkeypatch):
    original = SqliteCursor._advance
    calls = {"n": 0}

    def failing_advance(self):
        calls["n"] += 1
        if calls["n"] == 3:
            raise HostRequestError("disk went away", name="UnknownError")
        return original(self)

    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            service.use_store("items")
            for key in range(5):
                await service.set(key, key)
            monkeypatch.setattr(SqliteCursor, "_advance", failing_advance)
            ex = await expect_error(ErrorKind.OPERATION_FAILED, service.get_map())
            assert ex.name == "UnknownError"
            monkeypatch.setattr(SqliteCursor, "_advance", original)
            assert len(await service.get_map()) == 5

    asyncio.run(scenario())


def test_get_map_stops_advancing_at_limit(memory_host, monkeypatch):
    original = SqliteCursor._advance
    steps = []

    def counting_advance(self):
        steps.append(self.direction)
        return original(self)

    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            service.use_store("items")
            for key in range(5):
                await service.set(key, key)
            monkeypatch.setattr(SqliteCursor, "_advance", counting_advance)
            try:
                assert list(await service.get_map(limit=3)) == [0, 1, 2]
                assert len(steps) == 3

                steps.clear()
                assert list(await service.get_map(limit=2, direction="prev")) == [4, 3]
                assert steps == ["prev", "prev"]
            finally:
                monkeypatch.setattr(SqliteCursor, "_advance", original)

    asyncio.run(scenario())


def test_timeout_aborts_and_reports_timeout(memory_host, monkeypatch):
    original_get = SqliteObjectStore.get

    def silent_get(self, query):
        return Request(source=self, transaction=self.transaction)

    async def scenario():
        service = IndexedDBService(V1, host=memory_host, timeout=0.05)
        async with service:
            service.use_store("items")
            await service.set("k", "v")
            monkeypatch.setattr(SqliteObjectStore, "get", silent_get)
            ex = await expect_error(ErrorKind.TIMEOUT, service.get("k"))
            assert not ex.is_programming_error
            assert isinstance(ex.__cause__, TimeoutError)
            monkeypatch.setattr(SqliteObjectStore, "get", original_get)
            assert await service.get("k") == "v"

    asyncio.run(scenario())


def test_timeout_from_environment(memory_host, monkeypatch):
    monkeypatch.setenv("IDBSTORE_TIMEOUT", "2.5")
    assert IndexedDBService(V1, host=memory_host).timeout == 2.5
    assert IndexedDBService(V1, host=memory_host, timeout=1).timeout == 1


# =============================================================================
# VERSION CHANGE / BLOCKED
# =============================================================================


def test_blocked_open_then_retry(memory_host, log_entries):
    async def scenario():
        old = IndexedDBService(V1, host=memory_host)
        await old.open()
        await old.use_store("items").set("k", "v")

        new = IndexedDBService(V2, host=memory_host)
        ex = await expect_error(ErrorKind.OPEN_BLOCKED, new.open())
        assert not ex.is_programming_error
        assert new.state is ConnectionState.CLOSED
        assert old.is_open

        old.close()
        await new.open()
        assert new.version == 2
        assert new.store_names == ["items", "notes"]
        assert await new.use_store("items").get("k") == "v"
        new.close()

    asyncio.run(scenario())
    messages = _messages(log_entries)
    assert "database_open_blocked" in messages
    assert "database_version_change" in messages


def test_retry_while_still_blocked_reports_blocked(memory_host):
    async def scenario():
        old = IndexedDBService(V1, host=memory_host)
        await old.open()
        await old.use_store("items").set("k", "v")

        new = IndexedDBService(V2, host=memory_host)
        await expect_error(ErrorKind.OPEN_BLOCKED, new.open())
        await expect_error(ErrorKind.OPEN_BLOCKED, asyncio.wait_for(new.open(), 1.0))
        await expect_error(ErrorKind.OPEN_BLOCKED, asyncio.wait_for(new.open(), 1.0))
        assert new.state is ConnectionState.CLOSED
        assert old.is_open

        old.close()
        await asyncio.wait_for(new.open(), 1.0)
        assert new.version == 2
        assert await new.use_store("items").get("k") == "v"
        new.close()

    asyncio.run(scenario())


def test_close_on_version_change_unblocks_upgrade(memory_host):
    async def scenario():
        old = IndexedDBService(V1, host=memory_host, close_on_version_change=True)
        await old.open()

        new = IndexedDBService(V2, host=memory_host)
        await new.open()
        assert new.version == 2
        assert old.state is ConnectionState.CLOSED
        await expect_error(ErrorKind.NOT_INITIALIZED, old.get("k"))
        new.close()

    asyncio.run(scenario())


def test_delete_database(memory_host):
    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            await service.use_store("items").set("k", "v")
            ex = await expect_error(
                ErrorKind.OPEN_BLOCKED, delete_database("app", host=memory_host)
            )
            assert ex.database == "app"

        await delete_database("app", host=memory_host)
        async with IndexedDBService(V1, host=memory_host) as service:
            assert await service.use_store("items").get("k") is None

    asyncio.run(scenario())


def test_delete_database_removes_file(file_host, tmp_path):
    async def scenario():
        async with IndexedDBService(V1, host=file_host):
            pass
        assert (tmp_path / "app.sqlite3").exists()
        await delete_database("app", host=file_host)

    asyncio.run(scenario())
    assert not (tmp_path / "app.sqlite3").exists()


# =============================================================================
# BOUND STORES
# =============================================================================


def test_bound_stores_are_independent(memory_host):
    async def scenario():
        async with IndexedDBService(V2, host=memory_host) as service:
            items = service.store("items")
            notes = service.store("notes")
            await asyncio.gather(items.set("k", "item"), notes.set("k", "note"))
            assert await items.get("k") == "item"
            assert await notes.get("k") == "note"
            assert service.selected_store is None
            with pytest.raises(dataclasses.FrozenInstanceError):
                items.name = "notes"

    asyncio.run(scenario())


def test_use_store_chains(memory_host):
    async def scenario():
        async with IndexedDBService(V1, host=memory_host) as service:
            key = await service.use_store("items").put("v", 5)
            assert key == 5
            assert service.selected_store == "items"

    asyncio.run(scenario())


# =============================================================================
# CACHE
# =============================================================================


def test_cache_roundtrip(memory_host):
    async def scenario():
        cache = IndexedDBCache(host=memory_host)
        assert cache.db_name == "db"
        await expect_error(ErrorKind.NOT_INITIALIZED, cache.get("k"))

        await cache.init()
        await cache.init()
        assert await cache.set("b", 2) == "b"
        assert await cache.put(1, "a") == "a"
        assert await cache.get("a") == 1
        assert await cache.get_map() == {"a": 1, "b": 2}
        assert await cache.get_map(limit=1, direction="prev") == {"b": 2}

        await cache.delete("a")
        assert await cache.get("a") is None
        cache.close()
        assert not cache.is_open

    asyncio.run(scenario())


def test_cache_with_key_generator(memory_host):
    async def scenario():
        cache = IndexedDBCache(
            "notes", "entries", key_path="id", auto_increment=True, host=memory_host
        )
        await cache.init()
        key = await cache.put({"text": "hello"})
        assert key == 1
        assert await cache.get(1) == {"text": "hello", "id": 1}
        cache.close()

    asyncio.run(scenario())


def test_descriptor_stores_accept_names():
    descriptor = DatabaseDescriptor("app", 3, ["a", StoreDescriptor("b", key_path="id")])
    assert descriptor.store_names == ["a", "b"]
    assert descriptor.store("b").key_path == "id"
    assert descriptor.store("c") is None
    with pytest.raises(ValueError):
        DatabaseDescriptor("app", 0)
    with pytest.raises(ValueError):
        DatabaseDescriptor("app", True)
    with pytest.raises(ValueError):
        DatabaseDescriptor("app", 1, ["a", "a"])
    with pytest.raises(TypeError):
        IndexedDBService({"name": "app"})
