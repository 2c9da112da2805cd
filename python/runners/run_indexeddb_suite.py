# -*- encoding: utf-8 -*-
"""
run_indexeddb_suite.py - PyScript entry point for the idbstore browser suite.

Runs tests/indexeddb/suite.py against window.indexedDB and renders its
output, plus idbstore's structured log entries, into the #output element.

Usage in PyScript:
    index.html loads this file with <script type="py" config="./pyscript.toml">.
    The "Run IndexedDB tests" button, or window.run_tests(null) from the
    console, starts a run.
"""

import asyncio
import sys
import traceback

from pyodide.ffi import create_proxy
from pyscript import document, window

from idbstore import BrowserHost, ui_log

# Import suite module without polluting globals (avoid name collisions)
from tests.indexeddb import suite

LEVEL_CSS = {
    "debug": "info",
    "info": "info",
    "warn": "warn",
    "error": "fail",
}


def _output():
    return document.querySelector("#output")


def append_line(text: str, css_class: str = "info"):
    """Append one line of text to the output panel."""
    output = _output()
    if output is None:
        return
    line = document.createElement("div")
    line.className = css_class
    line.textContent = text
    output.appendChild(line)


def render_entry(entry):
    """ui_log entry sink: show library log entries next to suite output."""
    append_line(ui_log.format_entry(entry), LEVEL_CSS.get(entry["level"], "info"))


def clear_output():
    output = _output()
    if output is not None:
        output.textContent = ""


class OutputRedirector:
    """File-like writer that redirects output to the UI."""

    def __init__(self, css_class: str = "info"):
        self.css_class = css_class
        self._buffer = ""
        self.encoding = "utf-8"

    def _class_for_line(self, line: str) -> str:
        upper = line.strip().upper()

        # Result prefixes win so test names containing "error" stay green.
        if upper.startswith("PASS:"):
            return "success"
        if upper.startswith("FAIL:") or upper.startswith("ERROR:"):
            return "fail"
        if "TRACEBACK" in upper:
            return "fail"
        return self.css_class

    def write(self, data):
        if data is None:
            return
        if isinstance(data, bytes):
            data = data.decode(self.encoding, errors="replace")
        self._buffer += str(data)
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            append_line(line, self._class_for_line(line))

    def flush(self):
        if self._buffer:
            append_line(self._buffer, self._class_for_line(self._buffer))
            self._buffer = ""

    def isatty(self):
        return False


async def _run_suite_async():
    """Run the suite with stdout, stderr and ui_log routed to #output."""
    clear_output()
    stdout = sys.stdout
    stderr = sys.stderr
    sys.stdout = OutputRedirector(css_class="info")
    sys.stderr = OutputRedirector(css_class="fail")
    ui_log.set_sinks(render_entry, clear_output)
    try:
        print("Starting idbstore browser suite...")
        print()
        await suite.run_all_tests(host=BrowserHost())
    except Exception as exc:
        append_line(f"Test suite failed with exception: {exc}", "fail")
        append_line(traceback.format_exc(), "fail")
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        sys.stdout = stdout
        sys.stderr = stderr
        ui_log.clear_sinks()


def run_tests(event=None):
    """Button click handler - schedules the async suite run."""
    return asyncio.ensure_future(_run_suite_async())


def _install():
    button = document.querySelector("#runBtn")
    handler = create_proxy(run_tests)
    if button is not None:
        button.addEventListener("click", handler)
    window.run_tests = handler
    append_line("Ready. Click 'Run IndexedDB tests'.", "info")


_install()
