"""issue_tracker_shared.errors — API error taxonomy.

Handlers raise these; the dispatcher in ``routing`` turns them into error
envelopes. Anything that is not an ``ApiError`` is reported as a generic 500.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ApiError",
    "AuthenticationError",
    "ConflictError",
    "InternalError",
    "NotFoundError",
    "ValidationError",
]


class ApiError(Exception):
    """Base class for errors with a defined HTTP status and envelope."""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str, *, error: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if error:
            self.error = error


class ValidationError(ApiError):
    status_code = 400
    error = "Validation error"


class AuthenticationError(ApiError):
    status_code = 401
    error = "Invalid token"


class NotFoundError(ApiError):
    status_code = 404
    error = "Not Found"


class ConflictError(ApiError):
    status_code = 409
    error = "Conflict"


class InternalError(ApiError):
    status_code = 500
    error = "Internal server error"
