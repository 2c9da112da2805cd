#!/usr/bin/env python3
"""Validate the idbstore browser layout and PyScript file mappings for CI."""

from __future__ import annotations

import re
import sys
import tomllib
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
PACKAGE_DIR = ROOT / "python" / "idbstore"

REQUIRED_PATHS = [
    "index.html",
    "pyscript.toml",
    "python/runners/run_indexeddb_suite.py",
    "python/tests/indexeddb/suite.py",
]

SCRIPT_TAG_RE = re.compile(r"<script\b[^>]*>", re.IGNORECASE)
ATTR_RE = re.compile(r'([a-zA-Z_:][a-zA-Z0-9_:\-]*)\s*=\s*["\']([^"\']+)["\']')


def rel_to_root(path_str: str) -> Path:
    normalized = path_str.strip()
    if normalized.startswith("http://") or normalized.startswith("https://"):
        return Path("__external__")
    normalized = normalized.lstrip("/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return ROOT / normalized


def collect_script_refs(html_path: Path) -> list[str]:
    """Return src and config paths of every <script type="py"> tag."""
    refs: list[str] = []
    content = html_path.read_text(encoding="utf-8")

    for match in SCRIPT_TAG_RE.finditer(content):
        attrs = {k.lower(): v for k, v in ATTR_RE.findall(match.group(0))}
        if attrs.get("type", "").lower() != "py":
            continue
        for attr in ("src", "config"):
            if attrs.get(attr):
                refs.append(attrs[attr])

    return refs


def unmapped_package_files(files_map: dict) -> list[str]:
    """Package modules that exist on disk but are not shipped to the browser."""
    mapped = {rel_to_root(str(src)).resolve() for src in files_map}
    unmapped = []
    for path in sorted(PACKAGE_DIR.rglob("*.py")):
        if path.resolve() not in mapped:
            unmapped.append(str(path.relative_to(ROOT)))
    return unmapped


def main() -> int:
    missing = [rel for rel in REQUIRED_PATHS if not (ROOT / rel).exists()]

    pyscript_path = ROOT / "pyscript.toml"
    if not pyscript_path.exists():
        print("Missing pyscript.toml")
        return 1

    cfg = tomllib.loads(pyscript_path.read_text(encoding="utf-8"))
    files_map = cfg.get("files", {})
    if not isinstance(files_map, dict):
        print("Invalid pyscript.toml: [files] must be a table")
        return 1

    for src in files_map:
        if not rel_to_root(str(src)).exists():
            missing.append(str(src))

    refs = collect_script_refs(ROOT / "index.html") if (ROOT / "index.html").exists() else []
    for ref in refs:
        ref_path = rel_to_root(ref)
        if ref_path.name != "__external__" and not ref_path.exists():
            missing.append(f"index.html: {ref}")

    unmapped = unmapped_package_files(files_map)

    if missing or unmapped:
        print("Runtime layout check failed.")
        for path in sorted(set(missing)):
            print(f"- missing: {path}")
        for path in unmapped:
            print(f"- not in pyscript.toml [files]: {path}")
        return 1

    print("Runtime layout check passed")
    print(f"Mapped files checked: {len(files_map)}")
    print(f"PyScript script refs checked: {len(refs)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
