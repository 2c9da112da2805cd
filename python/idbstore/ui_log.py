"""
ui_log.py - shared logging sink for browser and non-browser runs.

Library code emits structured log entries through this module instead of
printing. An application (e.g. the browser suite runner) can register custom
entry/clear sinks for state-driven rendering. Without a sink, entries go to
the JS console in the browser, or to stderr at or above IDBSTORE_LOG_LEVEL.
"""

from __future__ import annotations

import datetime
import os
import sys
from typing import Any, Callable, Dict, Iterable, Optional

# Optional browser console bridge.
try:
    from js import console
except ImportError:  # pragma: no cover - non-browser usage
    console = None


LogEntry = Dict[str, Any]
EntrySink = Callable[[LogEntry], None]
ClearSink = Callable[[], None]

LEVELS = ("debug", "info", "warn", "error")
DEFAULT_LEVEL = "warn"
_entry_sink: Optional[EntrySink] = None
_clear_sink: Optional[ClearSink] = None


def _now() -> str:
    return datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]


def _normalize_level(level: str) -> str:
    level = str(level or "info").lower()
    if level == "warning":
        return "warn"
    return level if level in LEVELS else "info"


def _normalize_entry(entry: LogEntry) -> LogEntry:
    return {
        "time": str(entry.get("time") or _now()),
        "level": _normalize_level(entry.get("level")),
        "msg": str(entry.get("msg") or ""),
        "fields": dict(entry.get("fields") or {}),
    }


def threshold() -> str:
    """Minimum level written by the default stderr sink."""
    raw = os.environ.get("IDBSTORE_LOG_LEVEL", DEFAULT_LEVEL)
    return _normalize_level(raw)


def enabled(level: str) -> bool:
    return LEVELS.index(_normalize_level(level)) >= LEVELS.index(threshold())


def set_sinks(
    entry_sink: Optional[EntrySink] = None, clear_sink: Optional[ClearSink] = None
) -> None:
    """Register sinks for app-level state-driven rendering."""
    global _entry_sink, _clear_sink
    _entry_sink = entry_sink
    _clear_sink = clear_sink


def clear_sinks() -> None:
    """Remove registered sinks and fall back to default behavior."""
    global _entry_sink, _clear_sink
    _entry_sink = None
    _clear_sink = None


def emit(msg: Any, level: str = "info", *, time: Optional[str] = None, **fields) -> None:
    entry = _normalize_entry(
        {"time": time, "level": level, "msg": msg, "fields": fields}
    )
    if _entry_sink is not None:
        _entry_sink(entry)
        return
    _default_emit(entry)


def emit_batch(entries: Iterable[LogEntry]) -> None:
    for entry in entries:
        normalized = _normalize_entry(entry)
        if _entry_sink is not None:
            _entry_sink(normalized)
        else:
            _default_emit(normalized)


def clear() -> None:
    if _clear_sink is not None:
        _clear_sink()


def debug(msg: Any, **fields) -> None:
    emit(msg, "debug", **fields)


def info(msg: Any, **fields) -> None:
    emit(msg, "info", **fields)


def warn(msg: Any, **fields) -> None:
    emit(msg, "warn", **fields)


def error(msg: Any, **fields) -> None:
    emit(msg, "error", **fields)


def format_entry(entry: LogEntry) -> str:
    fields = " ".join(f"{key}={value!r}" for key, value in entry["fields"].items())
    line = f"[{entry['time']}] {entry['level'].upper()} {entry['msg']}"
    return f"{line} {fields}" if fields else line


def _default_emit(entry: LogEntry) -> None:
    if console is not None:
        method = getattr(console, entry["level"], None) or console.log
        method(format_entry(entry))
        return
    if not enabled(entry["level"]):
        return
    sys.stderr.write(format_entry(entry) + "\n")
    sys.stderr.flush()
