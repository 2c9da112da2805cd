# -*- encoding: utf-8 -*-
"""
idbstore.hosts - host bindings.

BrowserHost drives window.indexedDB under Pyodide/PyScript; SqliteHost runs
the same contract on sqlite3 under CPython.
"""

from __future__ import annotations

from typing import Optional

from .. import config, ui_log
from .base import Host, PlainProxy
from .browser import BrowserHost
from .sqlite import SqliteHost, SqliteHostConfig

_shared_sqlite: Optional[SqliteHost] = None


def shared_sqlite_host() -> SqliteHost:
    """Process-wide SqliteHost, configured from the environment on first use."""
    global _shared_sqlite
    if _shared_sqlite is None:
        _shared_sqlite = SqliteHost(SqliteHostConfig.from_env())
    return _shared_sqlite


def default_host() -> Host:
    """
    Host selected by IDBSTORE_HOST.

    auto picks the browser when indexedDB is reachable, otherwise the shared
    SqliteHost. Forcing browser outside Pyodide yields a host whose opens
    fail with OpenFailed.
    """
    choice = config.host_choice()
    if choice == "browser":
        return BrowserHost()
    if choice == "sqlite":
        return shared_sqlite_host()
    browser = BrowserHost()
    if browser.available():
        return browser
    ui_log.debug("host_selected", host="sqlite")
    return shared_sqlite_host()


__all__ = [
    "BrowserHost",
    "Host",
    "PlainProxy",
    "SqliteHost",
    "SqliteHostConfig",
    "default_host",
    "shared_sqlite_host",
]
