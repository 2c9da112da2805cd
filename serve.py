#!/usr/bin/env python3
"""
Static file server for the idbstore browser suite.

Serves the repository root so index.html, pyscript.toml and the python/
tree resolve at the URLs pyscript.toml maps.
"""

import argparse
import functools
import http.server
import os
import socketserver
from pathlib import Path

ROOT = Path(__file__).resolve().parent
DEFAULT_PORT = int(os.environ.get("IDBSTORE_PORT", "8000"))


class SuiteRequestHandler(http.server.SimpleHTTPRequestHandler):
    """Static handler with cross-origin isolation headers for Pyodide."""

    def end_headers(self):
        self.send_header("Cross-Origin-Opener-Policy", "same-origin")
        self.send_header("Cross-Origin-Embedder-Policy", "credentialless")
        self.send_header("Cache-Control", "no-store")
        super().end_headers()


class ReusableTCPServer(socketserver.TCPServer):
    allow_reuse_address = True


def main():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--bind", default="127.0.0.1")
    args = parser.parse_args()

    handler = functools.partial(SuiteRequestHandler, directory=str(ROOT))
    with ReusableTCPServer((args.bind, args.port), handler) as httpd:
        print(f"Serving {ROOT} at http://{args.bind}:{args.port}/index.html")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            print("\nServer stopped")


if __name__ == "__main__":
    main()
