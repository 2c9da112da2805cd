# -*- encoding: utf-8 -*-
"""
Shared fixtures for the CPython test run (SqliteHost).
"""

from __future__ import annotations

import pytest

from idbstore import hosts, ui_log
from idbstore.hosts import SqliteHost, SqliteHostConfig


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep IDBSTORE_* settings from the developer's shell out of tests."""
    for key in (
        "IDBSTORE_HOST",
        "IDBSTORE_SQLITE_ROOT",
        "IDBSTORE_SQLITE_SYNCHRONOUS",
        "IDBSTORE_TIMEOUT",
        "IDBSTORE_LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(hosts, "_shared_sqlite", None)


@pytest.fixture()
def file_host(tmp_path):
    host = SqliteHost(SqliteHostConfig(root=tmp_path, synchronous="OFF"))
    yield host
    host.close()


@pytest.fixture()
def memory_host():
    host = SqliteHost(SqliteHostConfig.memory())
    yield host
    host.close()


@pytest.fixture()
def log_entries():
    entries = []
    ui_log.set_sinks(entries.append)
    yield entries
    ui_log.clear_sinks()
