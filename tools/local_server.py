#!/usr/bin/env python3
"""Local development server for the issue tracker Lambda functions.

Serves both functions on one port the way API Gateway fronts them in AWS:
each HTTP request becomes an API Gateway v2 (payload format 2.0) event and is
handed to ``lambda_handler`` of the function that owns the path.

    /auth, /auth/*   -> backend/lambda/auth_api
    everything else  -> backend/lambda/issues_api

A leading ``/api`` is stripped first, so ``/api/issues`` and ``/issues`` are the
same route.

Usage:
    python3 tools/local_server.py --port 3000
    python3 tools/local_server.py --storage file --db-file ./data/local-db.json
"""

from __future__ import annotations

import argparse
import base64
import importlib.util
import logging
import os
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlsplit

REPO_ROOT = Path(__file__).resolve().parent.parent
LAMBDA_DIR = REPO_ROOT / "backend" / "lambda"
LAYER_DIR = LAMBDA_DIR / "shared_layer" / "python"
FUNCTION_NAMES = ("auth_api", "issues_api")
API_PREFIX = "/api"

logger = logging.getLogger("local_server")


def _load_function(name: str) -> ModuleType:
    """Import backend/lambda/<name>/lambda_function.py under the module name ``name``."""
    if str(LAYER_DIR) not in sys.path:
        sys.path.insert(0, str(LAYER_DIR))
    module_path = LAMBDA_DIR / name / "lambda_function.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot load {module_path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _load_functions() -> Dict[str, ModuleType]:
    return {name: _load_function(name) for name in FUNCTION_NAMES}


def _strip_api_prefix(path: str) -> str:
    if path == API_PREFIX or path.startswith(API_PREFIX + "/"):
        return path[len(API_PREFIX):] or "/"
    return path


def _select_function(path: str) -> str:
    if path == "/auth" or path.startswith("/auth/"):
        return "auth_api"
    return "issues_api"


def _build_event(
    method: str,
    target: str,
    headers: Mapping[str, str],
    body: bytes = b"",
) -> Dict[str, Any]:
    """Translate an HTTP request into an API Gateway v2 proxy event."""
    parts = urlsplit(target)
    path = _strip_api_prefix(parts.path or "/")
    query: Dict[str, str] = {}
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        # API Gateway joins repeated query parameters with commas.
        query[key] = f"{query[key]},{value}" if key in query else value

    event: Dict[str, Any] = {
        "version": "2.0",
        "routeKey": "$default",
        "rawPath": path,
        "rawQueryString": parts.query,
        "headers": {str(k).lower(): v for k, v in headers.items()},
        "queryStringParameters": query or None,
        "requestContext": {"http": {"method": method.upper(), "path": path}},
        "isBase64Encoded": False,
    }
    if body:
        try:
            event["body"] = body.decode("utf-8")
        except UnicodeDecodeError:
            event["body"] = base64.b64encode(body).decode("ascii")
            event["isBase64Encoded"] = True
    return event


def _invoke(functions: Mapping[str, ModuleType], event: Dict[str, Any]) -> Dict[str, Any]:
    name = _select_function(event["rawPath"])
    return functions[name].lambda_handler(event, None)


class _RequestHandler(BaseHTTPRequestHandler):
    server_version = "IssueTrackerLocal/1.0"

    def _dispatch(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else b""
        event = _build_event(self.command, self.path, dict(self.headers.items()), body)
        result = _invoke(self.server.functions, event)

        payload = (result.get("body") or "").encode("utf-8")
        self.send_response(int(result.get("statusCode", 500)))
        for key, value in (result.get("headers") or {}).items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if payload:
            self.wfile.write(payload)

    do_GET = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_DELETE = _dispatch
    do_OPTIONS = _dispatch

    def log_message(self, fmt: str, *args: Any) -> None:
        logger.info("%s - %s", self.address_string(), fmt % args)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue tracker local development server")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    parser.add_argument("--storage", choices=("memory", "file", "dynamodb"), default=None)
    parser.add_argument("--db-file", default=None)
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    # Configuration is read at import time, so set it before loading the functions.
    if args.storage:
        os.environ["STORAGE_BACKEND"] = args.storage
    if args.db_file:
        os.environ["LOCAL_DB_FILE"] = args.db_file

    server = ThreadingHTTPServer((args.host, args.port), _RequestHandler)
    server.functions = _load_functions()
    logger.info("listening on http://%s:%d (api prefix %s optional)", args.host, args.port, API_PREFIX)
    for name, module in server.functions.items():
        for route in module.ROUTES:
            logger.info("  %-6s %s -> %s", route.method, route.pattern, name)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutting down")
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
