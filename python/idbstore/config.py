# -*- encoding: utf-8 -*-
"""
idbstore.config - environment and file configuration.

Environment variables are read at call time so tests and embedding
applications can change them without reloading modules:

    IDBSTORE_HOST               auto | browser | sqlite (default auto)
    IDBSTORE_SQLITE_ROOT        directory for sqlite databases, or :memory:
    IDBSTORE_SQLITE_SYNCHRONOUS sqlite synchronous pragma (default NORMAL)
    IDBSTORE_TIMEOUT            per-operation timeout in seconds (default none)
    IDBSTORE_LOG_LEVEL          debug | info | warn | error (default warn)
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Optional

from . import ui_log
from .schema import DatabaseDescriptor

DEFAULT_GET_MAP_LIMIT = 1000
DEFAULT_SQLITE_ROOT = Path.home() / ".idbstore"
MEMORY_ROOT = ":memory:"
HOST_CHOICES = ("auto", "browser", "sqlite")
SYNCHRONOUS_CHOICES = ("OFF", "NORMAL", "FULL", "EXTRA")


def host_choice() -> str:
    raw = os.environ.get("IDBSTORE_HOST", "auto").strip().lower()
    if raw not in HOST_CHOICES:
        ui_log.warn("invalid_env_choice", key="IDBSTORE_HOST", value=raw, default="auto")
        return "auto"
    return raw


def sqlite_root() -> Optional[Path]:
    """Directory for sqlite databases, or None for in-memory databases."""
    raw = os.environ.get("IDBSTORE_SQLITE_ROOT")
    if raw is None or not raw.strip():
        return DEFAULT_SQLITE_ROOT
    if raw.strip() == MEMORY_ROOT:
        return None
    return Path(raw).expanduser()


def sqlite_synchronous() -> str:
    raw = os.environ.get("IDBSTORE_SQLITE_SYNCHRONOUS", "NORMAL").strip().upper()
    if raw not in SYNCHRONOUS_CHOICES:
        ui_log.warn(
            "invalid_env_choice",
            key="IDBSTORE_SQLITE_SYNCHRONOUS",
            value=raw,
            default="NORMAL",
        )
        return "NORMAL"
    return raw


def operation_timeout() -> Optional[float]:
    """Per-operation timeout in seconds, or None for unbounded waits."""
    raw = os.environ.get("IDBSTORE_TIMEOUT")
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        ui_log.warn("invalid_env_float", key="IDBSTORE_TIMEOUT", value=raw)
        return None
    if value <= 0:
        ui_log.warn("invalid_env_float", key="IDBSTORE_TIMEOUT", value=raw)
        return None
    return value


def load_descriptor(path: str | Path) -> DatabaseDescriptor:
    """
    Load a DatabaseDescriptor from a TOML file.

    Expected layout:

        [database]
        name = "app"
        version = 2

        [[database.stores]]
        name = "items"

        [[database.stores]]
        name = "notes"
        key_path = "id"
        auto_increment = true

    Raises:
        ValueError: if the file has no [database] table or invalid values
    """
    cfg = tomllib.loads(Path(path).read_text(encoding="utf-8"))
    database = cfg.get("database")
    if not isinstance(database, dict):
        raise ValueError(f"{path}: missing [database] table")
    if "name" not in database:
        raise ValueError(f"{path}: [database] requires a name")
    return DatabaseDescriptor.from_dict(database)
