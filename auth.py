"""Password hashing and signed session tokens."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import jwt

logger = logging.getLogger(__name__)

AUTH_COOKIE = "auth-token"
LEGACY_AUTH_COOKIE = "token"
TOKEN_ISSUER = "learning-platform"
TOKEN_AUDIENCE = "learning-platform-users"
TOKEN_ALGORITHM = "HS256"
DEFAULT_JWT_SECRET = "dev-secret-change-me"

_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"


class AuthError(Exception):
    """Raised when a request carries no usable identity."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _jwt_secret() -> str:
    return os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET


def _token_lifetime() -> timedelta:
    raw = os.getenv("JWT_EXPIRES_DAYS", "")
    try:
        days = int(raw) if raw else 7
    except ValueError:
        days = 7
    return timedelta(days=max(1, days))


def token_max_age() -> int:
    return int(_token_lifetime().total_seconds())


# ---------- Passwords ----------
def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def hash_password(password: str) -> tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def verify_password(password: str, stored_hash: str, stored_salt: Optional[str]) -> bool:
    if not stored_salt:
        return False
    try:
        derived = _pbkdf2_hash(password, stored_salt)
    except ValueError:
        return False
    return hmac.compare_digest(stored_hash or "", derived)


# ---------- Tokens ----------
def issue_token(user_id: str, role: str = "user", *, now: Optional[datetime] = None) -> str:
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "role": role,
        "iat": issued_at,
        "exp": issued_at + _token_lifetime(),
        "iss": TOKEN_ISSUER,
        "aud": TOKEN_AUDIENCE,
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=TOKEN_ALGORITHM)


def decode_token(token: Optional[str]) -> Identity:
    """Verify ``token`` and return the identity it carries.

    Raises :class:`AuthError` for a missing, tampered, expired or
    wrongly-scoped token.
    """
    if not token:
        raise AuthError("Unauthorized")
    try:
        claims: Mapping[str, Any] = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=[TOKEN_ALGORITHM],
            issuer=TOKEN_ISSUER,
            audience=TOKEN_AUDIENCE,
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired") from None
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected token: %s", exc)
        raise AuthError("Invalid token") from None
    user_id = claims.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        raise AuthError("Invalid token payload")
    role = claims.get("role") if claims.get("role") in {"user", "admin"} else "user"
    return Identity(user_id=user_id, role=role)


def identity_from_cookies(cookies: Mapping[str, str], cookie_name: str = AUTH_COOKIE) -> Identity:
    return decode_token(cookies.get(cookie_name))
