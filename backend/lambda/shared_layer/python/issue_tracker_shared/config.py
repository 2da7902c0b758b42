"""issue_tracker_shared.config — Environment variables and constants.

Values are read once at import time (cold start) and shared by both Lambda
functions. Callers may override module attributes before building collaborators.
"""

from __future__ import annotations

import os

__all__ = [
    "ACCESS_TOKEN_TTL_SECONDS",
    "API_BASE_PATH",
    "CORS_ORIGIN",
    "DEFAULT_PAGE_SIZE",
    "DYNAMODB_REGION",
    "ISSUES_TABLE",
    "ISSUE_PRIORITIES",
    "ISSUE_STATUSES",
    "JWT_ALGORITHM",
    "JWT_SECRET",
    "LOCAL_DB_FILE",
    "LOG_LEVEL",
    "MAX_PAGE_SIZE",
    "PASSWORD_HASH_ITERATIONS",
    "PASSWORD_MIN_LENGTH",
    "REFRESH_TOKEN_TTL_SECONDS",
    "REQUEST_TIMEOUT_SECONDS",
    "SEED_ADMIN_EMAIL",
    "SEED_ADMIN_PASSWORD",
    "SESSIONS_TABLE",
    "STORAGE_BACKEND",
    "USERS_EMAIL_INDEX",
    "USERS_TABLE",
    "USER_ROLES",
    "USER_STATUSES",
]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

STORAGE_BACKEND: str = os.environ.get("STORAGE_BACKEND", "memory").strip().lower()
LOCAL_DB_FILE: str = os.environ.get("LOCAL_DB_FILE", "./data/local-db.json")
USERS_TABLE: str = os.environ.get("USERS_TABLE", "Users")
USERS_EMAIL_INDEX: str = os.environ.get("USERS_EMAIL_INDEX", "email-index")
ISSUES_TABLE: str = os.environ.get("ISSUES_TABLE", "Issues")
SESSIONS_TABLE: str = os.environ.get("SESSIONS_TABLE", "UserSessions")
DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "us-east-1")

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

JWT_SECRET: str = os.environ.get(
    "JWT_SECRET", "local-dev-signing-secret-change-before-deploy"
)
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL_SECONDS: int = _env_int("ACCESS_TOKEN_TTL_SECONDS", 24 * 60 * 60)
REFRESH_TOKEN_TTL_SECONDS: int = _env_int("REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60)
PASSWORD_MIN_LENGTH: int = _env_int("PASSWORD_MIN_LENGTH", 8)
PASSWORD_HASH_ITERATIONS: int = _env_int("PASSWORD_HASH_ITERATIONS", 210_000)
SEED_ADMIN_EMAIL: str = os.environ.get("SEED_ADMIN_EMAIL", "").strip()
SEED_ADMIN_PASSWORD: str = os.environ.get("SEED_ADMIN_PASSWORD", "")

USER_ROLES = ("ADMIN", "SUPPORT_STAFF", "END_USER")
USER_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED", "PENDING_VERIFICATION")

# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------

ISSUE_STATUSES = ("OPEN", "IN_PROGRESS", "RESOLVED", "CLOSED")
ISSUE_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
DEFAULT_PAGE_SIZE: int = _env_int("DEFAULT_PAGE_SIZE", 50)
MAX_PAGE_SIZE: int = _env_int("MAX_PAGE_SIZE", 100)

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

CORS_ORIGIN: str = os.environ.get("CORS_ORIGIN", "*")
API_BASE_PATH: str = os.environ.get("API_BASE_PATH", "").rstrip("/")
# Matches the 10 second Lambda timeout of the deployed functions.
REQUEST_TIMEOUT_SECONDS: float = _env_float("REQUEST_TIMEOUT_SECONDS", 10.0)
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()
