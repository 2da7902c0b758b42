"""issue_tracker_shared.auth — Token issuance/verification and password hashing.

Tokens are HS256 JWTs signed with ``JWT_SECRET``:

    access token   {userId, email, role, type="access", jti, iat, exp=iat+24h}
    refresh token  {userId, type="refresh", jti, iat, exp=iat+7d}

Logout revokes a token by adding its ``jti`` to a revocation list until the
token's own expiry; verification consults that list.

Passwords are stored as ``pbkdf2_sha256$<iterations>$<salt hex>$<digest hex>``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import time
import uuid
from typing import Any, Dict, Optional

import jwt

from issue_tracker_shared import config
from issue_tracker_shared.errors import AuthenticationError
from issue_tracker_shared.http_utils import _header
from issue_tracker_shared.repositories import _get_revocation_list

logger = logging.getLogger(__name__)

__all__ = [
    "TokenIssuer",
    "_extract_bearer_token",
    "_get_token_issuer",
    "_hash_password",
    "_verify_password",
]

_HASH_SCHEME = "pbkdf2_sha256"

# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def _hash_password(
    password: str,
    *,
    iterations: Optional[int] = None,
    salt: Optional[str] = None,
) -> str:
    rounds = iterations or config.PASSWORD_HASH_ITERATIONS
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt), rounds
    )
    return f"{_HASH_SCHEME}${rounds}${salt}${digest.hex()}"


def _verify_password(password: str, stored_hash: Optional[str]) -> bool:
    """Constant-time check of ``password`` against a stored hash."""
    if not password or not stored_hash:
        return False
    try:
        scheme, rounds, salt, _digest = stored_hash.split("$")
        rounds_int = int(rounds)
        bytes.fromhex(salt)
    except ValueError:
        return False
    if scheme != _HASH_SCHEME:
        return False
    candidate = _hash_password(password, iterations=rounds_int, salt=salt)
    return hmac.compare_digest(candidate, stored_hash)


# ---------------------------------------------------------------------------
# Request token extraction
# ---------------------------------------------------------------------------


def _extract_bearer_token(event: Dict[str, Any]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    auth_header = (_header(event, "authorization") or "").strip()
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer "):].strip()
    return token or None


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Signs and verifies access/refresh token pairs."""

    def __init__(
        self,
        secret: str,
        *,
        revocations: Any = None,
        algorithm: str = config.JWT_ALGORITHM,
        access_ttl: int = config.ACCESS_TOKEN_TTL_SECONDS,
        refresh_ttl: int = config.REFRESH_TOKEN_TTL_SECONDS,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is empty")
        self._secret = secret
        self._revocations = revocations
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Issue an access + refresh token pair for ``user``."""
        now = int(time.time())
        access_claims = {
            "userId": user["userId"],
            "email": user.get("email", ""),
            "role": user.get("role", ""),
            "type": "access",
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        refresh_claims = {
            "userId": user["userId"],
            "type": "refresh",
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        return {
            "token": jwt.encode(access_claims, self._secret, algorithm=self.algorithm),
            "refreshToken": jwt.encode(refresh_claims, self._secret, algorithm=self.algorithm),
            "expiresIn": self.access_ttl,
        }

    def _decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat"], "verify_exp": True},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired. Please sign in again.")
        except jwt.PyJWTError as exc:
            logger.info("token rejected: %s", exc)
            raise AuthenticationError("Invalid authorization token")

    def _verify(self, token: str, expected_type: str) -> Dict[str, Any]:
        if not token:
            raise AuthenticationError("Authorization token is required", error="Missing token")
        claims = self._decode(token)
        if claims.get("type") != expected_type or not claims.get("userId"):
            raise AuthenticationError("Invalid authorization token")
        jti = claims.get("jti")
        if self._revocations is not None and jti and self._revocations.is_revoked(jti):
            raise AuthenticationError("Token has been revoked. Please sign in again.")
        return claims

    def verify_access(self, token: str) -> Dict[str, Any]:
        return self._verify(token, "access")

    def verify_refresh(self, token: str) -> Dict[str, Any]:
        return self._verify(token, "refresh")

    def revoke(self, token: str) -> bool:
        """Revoke a still-valid token. Returns False for tokens that do not verify."""
        if self._revocations is None or not token:
            return False
        try:
            claims = self._decode(token)
        except AuthenticationError:
            return False
        jti = claims.get("jti")
        if not jti:
            return False
        self._revocations.revoke(jti, int(claims["exp"]))
        return True


_issuer: Optional[TokenIssuer] = None
_issuer_lock = threading.Lock()


def _get_token_issuer() -> TokenIssuer:
    """Get (or create) the process-wide token issuer."""
    global _issuer
    with _issuer_lock:
        if _issuer is None:
            _issuer = TokenIssuer(config.JWT_SECRET, revocations=_get_revocation_list())
        return _issuer
