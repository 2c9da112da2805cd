# -*- encoding: utf-8 -*-
"""
suite.py - host-independent scenarios for IndexedDBService.

The same scenarios run in the browser (runners/run_indexeddb_suite.py, via
PyScript against window.indexedDB) and under pytest against SqliteHost
(test_indexeddb.py). Each scenario takes an open service and the name of
the store it should use.

Usage:
    results = await run_all_tests()              # default host
    results = await run_all_tests(host=my_host)  # explicit host
"""

from __future__ import annotations

import datetime

from idbstore import (
    CursorDirection,
    DatabaseDescriptor,
    ErrorKind,
    IndexedDBService,
    IndexedDBServiceError,
    KeyRange,
    StoreDescriptor,
    delete_database,
)

SUITE_DB = "idbstore_suite"

SUITE_DESCRIPTOR = DatabaseDescriptor(
    SUITE_DB,
    1,
    [
        StoreDescriptor("kv_store"),
        StoreDescriptor("enum_store"),
        StoreDescriptor("inline_store", key_path="id"),
        StoreDescriptor("auto_store", auto_increment=True),
        StoreDescriptor("nested_store", key_path="meta.id", auto_increment=True),
    ],
)

ALL_KEYS = KeyRange.lower_bound(float("-inf"))


# =============================================================================
# TEST RESULTS TRACKING
# =============================================================================


class AsyncTestResults:
    """Tracks test pass/fail counts for async tests."""

    def __init__(self):
        self.passed = 0
        self.failed = 0
        self.errors = 0
        self.failures = []
        self.error_list = []

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.errors == 0

    def record_pass(self, name: str):
        self.passed += 1
        print(f"  PASS: {name}")

    def record_fail(self, name: str, msg: str):
        self.failed += 1
        self.failures.append((name, msg))
        print(f"  FAIL: {name}")
        print(f"    AssertionError: {msg}")

    def record_error(self, name: str, msg: str):
        self.errors += 1
        self.error_list.append((name, msg))
        print(f"  ERROR: {name}")
        print(f"    {msg}")

    def print_summary(self):
        total = self.passed + self.failed + self.errors
        print("=" * 64)
        print("TEST SUMMARY")
        print("=" * 64)
        print(f"Total:  {total}")
        print(f"Passed: {self.passed}")
        print(f"Failed: {self.failed}")
        print(f"Errors: {self.errors}")

        if self.ok:
            print("-" * 64)
            print("ALL TESTS PASSED!")
        else:
            if self.failures:
                print("-" * 64)
                print("FAILURES:")
                for name, msg in self.failures:
                    print(f"  {name}: {msg}")
            if self.error_list:
                print("-" * 64)
                print("ERRORS:")
                for name, msg in self.error_list:
                    print(f"  {name}: {msg}")
        print(f"SUMMARY: {self.passed} passed, {self.failed + self.errors} failed")


async def expect_error(kind: ErrorKind, awaitable) -> IndexedDBServiceError:
    """Await awaitable and return the IndexedDBServiceError it must raise."""
    try:
        await awaitable
    except IndexedDBServiceError as ex:
        assert ex.kind is kind, f"Expected {kind.value}, got {ex.kind.value}: {ex}"
        return ex
    raise AssertionError(f"Expected {kind.value}, nothing raised")


# =============================================================================
# BASIC OPERATIONS
# =============================================================================


async def test_put_get(service, store):
    """put() resolves with the key and get() returns the value."""
    service.use_store(store)
    key = await service.put({"title": "first", "tags": ["a", "b"]}, "put_get")
    assert key == "put_get", f"put returned {key!r}"

    value = await service.get("put_get")
    assert value == {"title": "first", "tags": ["a", "b"]}, f"Got {value!r}"


async def test_set_overwrite(service, store):
    """set() replaces an existing record."""
    service.use_store(store)
    await service.set("overwrite", "value1")
    assert await service.get("overwrite") == "value1"

    await service.set("overwrite", "value2")
    value = await service.get("overwrite")
    assert value == "value2", f"Got {value!r}, expected 'value2'"


async def test_get_missing(service, store):
    """A missing key resolves with None, not an error."""
    service.use_store(store)
    assert await service.get("no_such_key") is None


async def test_delete(service, store):
    """delete() removes the record; deleting again is not an error."""
    service.use_store(store)
    await service.set("to_delete", 42)
    assert await service.get("to_delete") == 42

    await service.delete("to_delete")
    assert await service.get("to_delete") is None
    await service.delete("to_delete")


async def test_range_queries(service, store):
    """get() and delete() accept key ranges."""
    service.use_store(store)
    for key in ("range_a", "range_b", "range_c", "range_d"):
        await service.set(key, key.upper())

    first = await service.get(KeyRange.lower_bound("range_b", open=True))
    assert first == "RANGE_C", f"Got {first!r}"

    await service.delete(KeyRange.bound("range_b", "range_c"))
    assert await service.get("range_b") is None
    assert await service.get("range_c") is None
    assert await service.get("range_a") == "RANGE_A"
    assert await service.get("range_d") == "RANGE_D"


async def test_binary_and_array_keys(service, store):
    """Binary and compound keys round-trip through put/get."""
    service.use_store(store)
    await service.set(b"\xff\x00\x10", "binary")
    await service.set(("user", 7), "compound")

    assert await service.get(b"\xff\x00\x10") == "binary"
    assert await service.get(["user", 7]) == "compound"


async def test_bound_store(service, store):
    """A BoundStore ignores the service's selected store."""
    bound = service.store(store)
    service.use_store("enum_store")

    await bound.set("bound_key", "bound_value")
    assert await bound.get("bound_key") == "bound_value"
    assert await service.get("bound_key") is None
    assert service.selected_store == "enum_store"


# =============================================================================
# ENUMERATION
# =============================================================================


async def _reset(service, store, keys):
    service.use_store(store)
    await service.delete(ALL_KEYS)
    for key in keys:
        await service.set(key, f"v{key}")


async def test_get_map_order(service, store):
    """get_map() returns entries in key order."""
    await _reset(service, store, [3, 1, 5, 2, 4])
    entries = await service.get_map()
    assert list(entries) == [1, 2, 3, 4, 5], f"Got {list(entries)}"
    assert entries[3] == "v3"


async def test_get_map_limit(service, store):
    """At most limit entries come back, from the start of the traversal."""
    await _reset(service, store, [1, 2, 3, 4, 5])
    entries = await service.get_map(limit=3)
    assert list(entries) == [1, 2, 3], f"Got {list(entries)}"

    assert await service.get_map(limit=0) == {}
    assert len(await service.get_map(limit=10)) == 5


async def test_get_map_reverse(service, store):
    """prev direction walks from the highest key."""
    await _reset(service, store, [1, 2, 3, 4, 5])
    entries = await service.get_map(limit=2, direction=CursorDirection.PREV)
    assert list(entries) == [5, 4], f"Got {list(entries)}"

    entries = await service.get_map(direction="prevunique")
    assert list(entries) == [5, 4, 3, 2, 1], f"Got {list(entries)}"


async def test_mixed_key_order(service, store):
    """Keys of different types sort number < date < string < binary < array."""
    service.use_store(store)
    await service.delete(ALL_KEYS)
    when = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)
    for key in (("a", 1), b"\x01", "text", when, 2.5, -1):
        await service.set(key, "x")

    keys = list(await service.get_map())
    assert keys == [-1, 2.5, when, "text", b"\x01", ("a", 1)], f"Got {keys!r}"


async def test_count(service, store):
    """count() covers the whole store or a range."""
    await _reset(service, store, [1, 2, 3, 4])
    assert await service.count() == 4
    assert await service.count(KeyRange.upper_bound(2)) == 2
    assert await service.count(3) == 1


# =============================================================================
# KEY PATHS AND KEY GENERATORS
# =============================================================================


async def test_inline_keys(service, store):
    """Stores with a key path take the key from the value."""
    service.use_store(store)
    key = await service.put({"id": "inline-1", "n": 1})
    assert key == "inline-1", f"put returned {key!r}"
    assert await service.get("inline-1") == {"id": "inline-1", "n": 1}

    ex = await expect_error(
        ErrorKind.OPERATION_FAILED, service.put({"id": "inline-2"}, "explicit")
    )
    assert ex.name == "DataError", f"Got name {ex.name!r}"
    await expect_error(ErrorKind.OPERATION_FAILED, service.put({"n": 2}))


async def test_key_generator(service, store):
    """Generated keys count up from 1 and jump past explicit numeric keys."""
    service.use_store(store)
    first = await service.put("a")
    second = await service.put("b")
    assert (first, second) == (1, 2), f"Got {(first, second)}"

    assert await service.put("c", 10) == 10
    assert await service.put("d") == 11
    assert await service.get(11) == "d"


async def test_key_path_injection(service, store):
    """A generated key is written into the value at the key path."""
    service.use_store(store)
    key = await service.put({"meta": {}, "body": "hello"})
    value = await service.get(key)
    assert value == {"meta": {"id": key}, "body": "hello"}, f"Got {value!r}"


# =============================================================================
# TEST RUNNER
# =============================================================================


SUITE = [
    (
        "Basic Operations",
        "kv_store",
        [
            ("test_put_get", test_put_get),
            ("test_set_overwrite", test_set_overwrite),
            ("test_get_missing", test_get_missing),
            ("test_delete", test_delete),
            ("test_range_queries", test_range_queries),
            ("test_binary_and_array_keys", test_binary_and_array_keys),
            ("test_bound_store", test_bound_store),
        ],
    ),
    (
        "Enumeration",
        "enum_store",
        [
            ("test_get_map_order", test_get_map_order),
            ("test_get_map_limit", test_get_map_limit),
            ("test_get_map_reverse", test_get_map_reverse),
            ("test_mixed_key_order", test_mixed_key_order),
            ("test_count", test_count),
        ],
    ),
    (
        "Inline Keys",
        "inline_store",
        [("test_inline_keys", test_inline_keys)],
    ),
    (
        "Key Generator",
        "auto_store",
        [("test_key_generator", test_key_generator)],
    ),
    (
        "Key Path Injection",
        "nested_store",
        [("test_key_path_injection", test_key_path_injection)],
    ),
]


async def run_all_tests(host=None) -> AsyncTestResults:
    """Run every scenario against a fresh suite database."""
    results = AsyncTestResults()

    print("=" * 64)
    print("idbstore Service Tests")
    print("=" * 64)
    print()
    print("Setting up test database...")

    service = IndexedDBService(SUITE_DESCRIPTOR, host=host)
    try:
        await delete_database(SUITE_DB, host=service.host)
        await service.open()
        print(f"Database opened successfully ({service.host.name} host)")
    except Exception as e:
        print(f"ERROR: Failed to open database: {e}")
        results.record_error("database_setup", str(e))
        results.print_summary()
        return results

    for section_name, store, tests in SUITE:
        print()
        print(section_name)
        print("-" * 32)

        for name, func in tests:
            try:
                await func(service, store)
                results.record_pass(name)
            except AssertionError as e:
                results.record_fail(name, str(e))
            except Exception as e:
                results.record_error(name, f"{type(e).__name__}: {e}")

    print()
    print("Cleaning up...")
    try:
        service.close()
        await delete_database(SUITE_DB, host=service.host)
        print("Cleanup complete")
    except Exception as e:
        print(f"Cleanup warning: {e}")

    print()
    results.print_summary()
    return results
