"""issue_tracker_shared.http_utils — HTTP response helpers with CORS.

Response envelopes used by both Lambda functions:

    auth routes     {"success": true, "data": ..., "message": ...}
    issue routes    bare JSON payload
    every error     {"success": false, "error": ..., "message": ...}

Every response, including 204 and CORS preflight, carries the JSON content type
and the CORS headers.
"""

from __future__ import annotations

import base64
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from issue_tracker_shared import config
from issue_tracker_shared.errors import ApiError, ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "_cors_headers",
    "_error",
    "_error_from_exception",
    "_header",
    "_no_content",
    "_ok",
    "_parse_body",
    "_path_method",
    "_response",
]


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": config.CORS_ORIGIN,
        "Access-Control-Allow-Headers": "Content-Type,Authorization",
        "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
    }


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build an API Gateway proxy response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            **_cors_headers(),
        },
        "body": "" if body is None else json.dumps(body, default=_json_default),
    }


def _ok(
    status_code: int = 200,
    data: Any = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a wrapped success envelope (auth routes)."""
    payload: Dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    return _response(status_code, payload)


def _no_content() -> Dict[str, Any]:
    return _response(204, None)


def _error(status_code: int, error: str, message: Optional[str] = None) -> Dict[str, Any]:
    """Build a standard error envelope.

    Args:
        status_code: HTTP status code.
        error: Short error category, e.g. ``Validation error``.
        message: Human-readable detail. Defaults to the category.
    """
    return _response(
        status_code,
        {
            "success": False,
            "error": error,
            "message": message or error,
        },
    )


def _error_from_exception(exc: ApiError) -> Dict[str, Any]:
    return _error(exc.status_code, exc.error, exc.message)


def _parse_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse the JSON object body of an API Gateway event (handles base64).

    A missing or empty body parses as ``{}``. Raises ``ValidationError`` for
    malformed JSON or a body that is not a JSON object.
    """
    raw = event.get("body")
    if raw in (None, ""):
        return {}
    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValidationError(f"Invalid request body encoding: {exc}") from exc
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValidationError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("JSON body must be an object")
    return parsed


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from an API Gateway v2 (or v1) event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method, path


def _header(event: Dict[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return value
    return None
