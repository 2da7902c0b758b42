"""auth_api/lambda_function.py

Lambda service for account registration and token-based sessions.

Routes (via API Gateway proxy):
    POST    /auth/register     Create an account and issue a token pair
    POST    /auth/login        Verify credentials and issue a token pair
    POST    /auth/refresh      Exchange a refresh token for a new pair
    GET     /auth/me           Return the user behind the bearer token
    POST    /auth/logout       Revoke the bearer token (always succeeds)
    OPTIONS /auth/*            CORS preflight

Responses use the wrapped envelope {success, data?, error?, message?}.

Auth:
    ``Authorization: Bearer <access token>`` for /auth/me and /auth/logout.
    Tokens are HS256 JWTs signed with JWT_SECRET.

Environment variables:
    JWT_SECRET             token signing secret
    STORAGE_BACKEND        memory | file | dynamodb (default: memory)
    USERS_TABLE            default: Users
    SESSIONS_TABLE         default: UserSessions
    SEED_ADMIN_EMAIL       optional, seeds an ACTIVE ADMIN account
    SEED_ADMIN_PASSWORD    password for the seeded account
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from issue_tracker_shared import config
from issue_tracker_shared.auth import (
    _extract_bearer_token,
    _get_token_issuer,
    _hash_password,
    _verify_password,
)
from issue_tracker_shared.errors import (
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from issue_tracker_shared.http_utils import _ok, _parse_body
from issue_tracker_shared.repositories import _get_user_repository
from issue_tracker_shared.routing import Route, Router
from issue_tracker_shared.serialization import _now_z

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PRIVATE_USER_FIELDS = ("passwordHash",)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(config.LOG_LEVEL)

# ---------------------------------------------------------------------------
# Collaborators (module-level for container reuse)
# ---------------------------------------------------------------------------

_admin_seeded = False


def _get_users():
    global _admin_seeded
    users = _get_user_repository()
    if not _admin_seeded:
        _admin_seeded = True
        _seed_admin(users)
    return users


def _get_issuer():
    return _get_token_issuer()


def _seed_admin(users) -> None:
    """Create the configured ACTIVE admin account if it does not exist yet."""
    email = config.SEED_ADMIN_EMAIL
    if not email or not config.SEED_ADMIN_PASSWORD:
        return
    if users.get_by_email(email) is not None:
        return
    now = _now_z()
    try:
        users.insert({
            "userId": f"admin-{uuid.uuid4().hex[:8]}",
            "email": email,
            "firstName": "Admin",
            "lastName": "User",
            "role": "ADMIN",
            "status": "ACTIVE",
            "createdAt": now,
            "updatedAt": now,
            "lastLoginAt": None,
            "passwordHash": _hash_password(config.SEED_ADMIN_PASSWORD),
        })
    except ConflictError:
        return
    logger.info("seeded admin account %s", email)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k not in _PRIVATE_USER_FIELDS}


def _auth_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    tokens = _get_issuer().issue(user)
    return {
        "user": _public_user(user),
        "token": tokens["token"],
        "refreshToken": tokens["refreshToken"],
        "expiresIn": tokens["expiresIn"],
    }


def _text(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    return value.strip() if isinstance(value, str) else ""


def _optional_text(body: Dict[str, Any], key: str) -> Optional[str]:
    value = body.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_register_input(body: Dict[str, Any]) -> Dict[str, Any]:
    errors: List[str] = []
    email = _text(body, "email")
    if not _EMAIL_PATTERN.match(email):
        errors.append("Invalid email format")
    password = body.get("password")
    if not isinstance(password, str) or len(password) < config.PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters")
    first_name = _text(body, "firstName")
    if not first_name:
        errors.append("First name is required")
    last_name = _text(body, "lastName")
    if not last_name:
        errors.append("Last name is required")
    role = body.get("role") or "END_USER"
    if role not in config.USER_ROLES:
        errors.append(f"Role must be one of {', '.join(config.USER_ROLES)}")
    if errors:
        raise ValidationError(", ".join(errors))
    return {
        "email": email,
        "password": password,
        "firstName": first_name,
        "lastName": last_name,
        "role": role,
        "phone": _optional_text(body, "phone"),
        "organization": _optional_text(body, "organization"),
    }


def _validate_login_input(body: Dict[str, Any]) -> Dict[str, str]:
    errors: List[str] = []
    email = _text(body, "email")
    if not _EMAIL_PATTERN.match(email):
        errors.append("Invalid email format")
    password = body.get("password")
    if not isinstance(password, str) or not password:
        errors.append("Password is required")
    if errors:
        raise ValidationError(", ".join(errors))
    return {"email": email, "password": password}


# ---------------------------------------------------------------------------
# POST /auth/register
# ---------------------------------------------------------------------------


def _handle_register(event: Dict[str, Any], _params: Dict[str, str]) -> Dict[str, Any]:
    data = _validate_register_input(_parse_body(event))
    users = _get_users()

    if users.get_by_email(data["email"]) is not None:
        raise ConflictError("A user with this email already exists", error="User already exists")

    now = _now_z()
    user: Dict[str, Any] = {
        "userId": str(uuid.uuid4()),
        "email": data["email"],
        "firstName": data["firstName"],
        "lastName": data["lastName"],
        "role": data["role"],
        "status": "PENDING_VERIFICATION",
        "createdAt": now,
        "updatedAt": now,
        "lastLoginAt": None,
        "passwordHash": _hash_password(data["password"]),
    }
    for optional in ("phone", "organization"):
        if data[optional]:
            user[optional] = data[optional]

    users.insert(user)
    logger.info("user registered: %s (role=%s)", user["userId"], user["role"])
    return _ok(201, _auth_payload(user), "User registered successfully")


# ---------------------------------------------------------------------------
# POST /auth/login
# ---------------------------------------------------------------------------


def _handle_login(event: Dict[str, Any], _params: Dict[str, str]) -> Dict[str, Any]:
    data = _validate_login_input(_parse_body(event))
    users = _get_users()

    user = users.get_by_email(data["email"])
    if user is None or not _verify_password(data["password"], user.get("passwordHash")):
        logger.warning("login rejected: bad credentials")
        raise AuthenticationError("Invalid email or password", error="Invalid credentials")

    if user.get("status") != "ACTIVE":
        logger.warning("login rejected: user %s status=%s", user["userId"], user.get("status"))
        raise AuthenticationError(
            "Your account is not active. Please contact support.",
            error="Account not active",
        )

    now = _now_z()
    user["lastLoginAt"] = now
    user["updatedAt"] = now
    users.update(user)

    logger.info("login succeeded: %s", user["userId"])
    return _ok(200, _auth_payload(user), "Login successful")


# ---------------------------------------------------------------------------
# POST /auth/refresh
# ---------------------------------------------------------------------------


def _handle_refresh(event: Dict[str, Any], _params: Dict[str, str]) -> Dict[str, Any]:
    body = _parse_body(event)
    refresh_token = body.get("refreshToken")
    if not refresh_token or not isinstance(refresh_token, str):
        raise ValidationError("Refresh token is required", error="Missing refresh token")

    claims = _get_issuer().verify_refresh(refresh_token)
    user = _get_users().get_by_id(claims["userId"])
    if user is None:
        raise AuthenticationError("Invalid refresh token")

    return _ok(200, _auth_payload(user), "Token refreshed successfully")


# ---------------------------------------------------------------------------
# GET /auth/me
# ---------------------------------------------------------------------------


def _handle_me(event: Dict[str, Any], _params: Dict[str, str]) -> Dict[str, Any]:
    token = _extract_bearer_token(event)
    if not token:
        raise AuthenticationError("Authorization token is required", error="Missing token")

    claims = _get_issuer().verify_access(token)
    user = _get_users().get_by_id(claims["userId"])
    if user is None:
        raise AuthenticationError("Invalid authorization token")

    return _ok(200, _public_user(user), "User retrieved successfully")


# ---------------------------------------------------------------------------
# POST /auth/logout
# ---------------------------------------------------------------------------


def _handle_logout(event: Dict[str, Any], _params: Dict[str, str]) -> Dict[str, Any]:
    issuer = _get_issuer()
    token = _extract_bearer_token(event)
    if token and issuer.revoke(token):
        logger.info("access token revoked on logout")

    # Logout never fails on a bad body or token.
    try:
        body = _parse_body(event)
    except ValidationError:
        body = {}
    refresh_token = body.get("refreshToken")
    if isinstance(refresh_token, str) and refresh_token:
        issuer.revoke(refresh_token)

    return _ok(200, message="Logout successful")


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

ROUTES = [
    Route("POST", "/auth/register", _handle_register),
    Route("POST", "/auth/login", _handle_login),
    Route("POST", "/auth/refresh", _handle_refresh),
    Route("GET", "/auth/me", _handle_me),
    Route("POST", "/auth/logout", _handle_logout),
]

ROUTER = Router(ROUTES, component="auth_api")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return ROUTER.dispatch(event, context)
