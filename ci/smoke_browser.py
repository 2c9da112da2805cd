#!/usr/bin/env python3
"""Browser smoke test: run the idbstore suite against Chromium's IndexedDB."""

from __future__ import annotations

import os
import re
import sys
import time
import urllib.error
import urllib.request

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

BASE_URL = os.environ.get("IDBSTORE_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
SERVER_WAIT_SECONDS = 90
ENTRYPOINT_WAIT_SECONDS = 300
SUMMARY_WAIT_SECONDS = 300
HEARTBEAT_SECONDS = 15
POLL_SECONDS = 2
SUMMARY_RE = re.compile(r"SUMMARY:\s+(\d+)\s+passed,\s+(\d+)\s+failed")


def log_step(message: str) -> None:
    print(f"[smoke] {message}", flush=True)


def wait_for_server(url: str, timeout_s: int) -> None:
    log_step(f"Waiting for local server at {url} (timeout={timeout_s}s)")
    start = time.time()
    deadline = start + timeout_s
    last_error = "server did not respond"

    while time.time() < deadline:
        try:
            with urllib.request.urlopen(f"{url}/index.html", timeout=5) as resp:
                if resp.status == 200:
                    log_step(f"Server is reachable after {int(time.time() - start)}s")
                    return
                last_error = f"unexpected status {resp.status}"
        except (urllib.error.URLError, TimeoutError) as exc:
            last_error = str(exc)
        time.sleep(1)

    raise RuntimeError(f"Timed out waiting for server at {url}: {last_error}")


def _last_non_empty_line(text: str) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return "<no output yet>"
    last = lines[-1]
    return f"{last[:237]}..." if len(last) > 240 else last


def poll(page, description: str, timeout_s: int, check):
    """
    Call check(output_text) until it returns a truthy value.

    Logs a heartbeat with the last output line while waiting.

    Returns:
        the truthy value returned by check

    Raises:
        RuntimeError: when timeout_s elapses first
    """
    log_step(f"Waiting for {description} (timeout={timeout_s}s)")
    start = time.monotonic()
    next_heartbeat = start + HEARTBEAT_SECONDS

    while True:
        output_text = page.inner_text("#output")
        result = check(output_text)
        if result:
            log_step(f"Got {description} after {int(time.monotonic() - start)}s")
            return result

        now = time.monotonic()
        if now - start >= timeout_s:
            raise RuntimeError(
                f"Timed out waiting for {description} after {timeout_s}s; "
                f"last_output_line={_last_non_empty_line(output_text)!r}"
            )
        if now >= next_heartbeat:
            log_step(
                f"Still waiting for {description}... elapsed={int(now - start)}s "
                f"last_line={_last_non_empty_line(output_text)!r}"
            )
            next_heartbeat = now + HEARTBEAT_SECONDS

        time.sleep(POLL_SECONDS)


def require_summary_ok(output_text: str) -> None:
    match = SUMMARY_RE.search(output_text)
    if not match:
        raise AssertionError("Did not find suite summary in output")

    passed = int(match.group(1))
    failed = int(match.group(2))
    print(f"Suite summary: {passed} passed, {failed} failed")
    if passed == 0:
        raise AssertionError("Suite reported no passing tests")
    if failed != 0:
        raise AssertionError(f"Suite reported failures: {failed}")


def main() -> int:
    log_step(f"Starting browser smoke checks for {BASE_URL}")
    wait_for_server(BASE_URL, SERVER_WAIT_SECONDS)
    log_step("Launching headless Chromium")

    with sync_playwright() as playwright:
        browser = playwright.chromium.launch(headless=True)
        page = browser.new_context().new_page()

        page_errors: list[str] = []
        console_errors: list[str] = []

        def on_console(msg) -> None:
            if msg.type == "error":
                console_errors.append(msg.text)
                log_step(f"Browser console error: {msg.text}")

        page.on("pageerror", lambda exc: page_errors.append(str(exc)))
        page.on("console", on_console)

        try:
            log_step("Opening /index.html")
            page.goto(f"{BASE_URL}/index.html", wait_until="domcontentloaded", timeout=180_000)
            page.wait_for_selector("#runBtn", timeout=120_000)
            poll(
                page,
                "PyScript entrypoint window.run_tests",
                ENTRYPOINT_WAIT_SECONDS,
                lambda _text: page.evaluate("() => typeof window.run_tests === 'function'"),
            )
            log_step("Clicking run button")
            page.click("#runBtn")
            output_text = poll(
                page,
                "suite summary",
                SUMMARY_WAIT_SECONDS,
                lambda text: text if SUMMARY_RE.search(text) else None,
            )
            require_summary_ok(output_text)
        except PlaywrightTimeoutError as exc:
            log_step(f"Playwright timeout: {exc}")
            return 1
        except Exception as exc:
            log_step(f"Smoke check failed: {type(exc).__name__}: {exc}")
            return 1
        finally:
            browser.close()

        if page_errors:
            log_step("Detected browser page errors:")
            for err in page_errors:
                log_step(f"- {err}")
            return 1

    log_step("Browser smoke checks passed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
