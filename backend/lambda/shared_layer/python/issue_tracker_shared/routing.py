"""issue_tracker_shared.routing — Route table matching and request dispatch.

A ``Router`` owns a fixed table of ``Route`` objects. Matching rules:

- routes are tried in declaration order, except that every exact-path route is
  tried before any wildcard route, so ``/issues`` is never captured by
  ``/issues/{id}``;
- a ``{name}`` segment matches exactly one non-empty path segment, so
  ``/issues/123/comments`` does not match ``/issues/{id}``;
- a single trailing slash is ignored;
- a known path with an unregistered method is simply not found (404).

``Router.dispatch`` wraps matching with CORS preflight handling, the error
envelope translation, the request timeout and one observability log line per
request.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote

from issue_tracker_shared import config
from issue_tracker_shared.errors import ApiError, InternalError, NotFoundError
from issue_tracker_shared.http_utils import (
    _error,
    _error_from_exception,
    _no_content,
    _path_method,
)
from issue_tracker_shared.serialization import _emit_structured_observability

logger = logging.getLogger(__name__)

__all__ = ["Route", "Router"]

Handler = Callable[[Dict[str, Any], Dict[str, str]], Dict[str, Any]]

# Leave room to serialize the timeout response before Lambda kills the invocation.
_CONTEXT_MARGIN_SECONDS = 0.5

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="dispatch")
        return _executor


def _split_path(path: str) -> List[str]:
    path = path or "/"
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    if path == "/":
        return []
    return path[1:].split("/")


def _is_wildcard(segment: str) -> bool:
    return len(segment) > 2 and segment.startswith("{") and segment.endswith("}")


class Route:
    """One (method, path template) pair bound to a handler."""

    def __init__(self, method: str, pattern: str, handler: Handler, name: str = "") -> None:
        self.method = method.upper()
        self.pattern = pattern
        self.handler = handler
        self.name = name or getattr(handler, "__name__", pattern)
        self.segments = _split_path(pattern)
        self.is_wildcard = any(_is_wildcard(s) for s in self.segments)

    def match(self, method: str, segments: List[str]) -> Optional[Dict[str, str]]:
        if method != self.method or len(segments) != len(self.segments):
            return None
        params: Dict[str, str] = {}
        for template, segment in zip(self.segments, segments):
            if _is_wildcard(template):
                if not segment:
                    return None
                params[template[1:-1]] = unquote(segment)
            elif template != segment:
                return None
        return params

    def __repr__(self) -> str:
        return f"Route({self.method} {self.pattern} -> {self.name})"


class Router:
    """Select and invoke exactly one handler per request."""

    def __init__(
        self,
        routes: Iterable[Route],
        *,
        component: str = "api",
        base_path: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        not_found_message: Optional[str] = None,
    ) -> None:
        # None reports "Unknown endpoint: <METHOD> <path>".
        self.not_found_message = not_found_message
        # sorted() is stable: declaration order survives within each group.
        self.routes: List[Route] = sorted(routes, key=lambda r: r.is_wildcard)
        self.component = component
        self.base_path = (config.API_BASE_PATH if base_path is None else base_path).rstrip("/")
        self.timeout_seconds = (
            config.REQUEST_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )

    def _strip_base(self, path: str) -> str:
        base = self.base_path
        if base and (path == base or path.startswith(base + "/")):
            return path[len(base):] or "/"
        return path

    def match(self, method: str, path: str) -> Optional[Tuple[Route, Dict[str, str]]]:
        """Return ``(route, path_params)`` for the first matching route, or None."""
        method = (method or "").upper()
        segments = _split_path(path)
        for route in self.routes:
            params = route.match(method, segments)
            if params is not None:
                return route, params
        return None

    def _effective_timeout(self, context: Any) -> float:
        timeout = float(self.timeout_seconds or 0)
        get_remaining = getattr(context, "get_remaining_time_in_millis", None)
        if callable(get_remaining):
            remaining = get_remaining() / 1000.0 - _CONTEXT_MARGIN_SECONDS
            if remaining > 0:
                timeout = min(timeout, remaining) if timeout > 0 else remaining
        return timeout

    def _invoke(
        self,
        route: Route,
        event: Dict[str, Any],
        params: Dict[str, str],
        context: Any,
    ) -> Dict[str, Any]:
        timeout = self._effective_timeout(context)
        if timeout <= 0:
            return route.handler(event, params)

        future = _get_executor().submit(route.handler, event, params)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.error(
                "request timed out after %.2fs: route=%s", timeout, route.name
            )
            raise InternalError("Request timed out")

    def dispatch(self, event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
        started = time.monotonic()
        method, raw_path = _path_method(event)
        path = self._strip_base(raw_path)
        route_name = ""
        error_code = ""

        try:
            if method == "OPTIONS":
                response = _no_content()
            else:
                found = self.match(method, path)
                if found is None:
                    raise NotFoundError(
                        self.not_found_message or f"Unknown endpoint: {method} {path}"
                    )
                route, params = found
                route_name = route.name
                response = self._invoke(route, event, params, context)
        except ApiError as exc:
            error_code = exc.error
            if exc.status_code >= 500:
                logger.error("request failed: %s %s: %s", method, path, exc.message)
            response = _error_from_exception(exc)
        except Exception:
            logger.exception("unhandled error: %s %s", method, path)
            error_code = "unhandled_exception"
            response = _error(500, "Internal server error", "An unexpected error occurred.")

        _emit_structured_observability(
            component=self.component,
            event="request",
            method=method,
            path=path,
            status_code=response.get("statusCode"),
            latency_ms=int((time.monotonic() - started) * 1000),
            error_code=error_code,
            extra={"route": route_name},
        )
        return response
