"""
auth/tokens.py -- Password hashing, password policy, session and reset tokens.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-force expensive. DUMMY_HASH enables timing equalization in
       AuthenticationService.login() so response time does not reveal whether
       a username exists.

  Sessions: python-jose JWT with HS256, carrying user_id, username, roles and
       the user's security stamp. A token whose stamp no longer matches the
       stored one is rejected (auth/dependencies.py), which is how logout and
       account deletion revoke sessions server-side.

  Reset tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. Only
       HMAC-SHA256(SECRET_KEY, raw_token) is stored, so a leaked database does
       not leak usable reset links. Deterministic hashing keeps lookup O(1).

Layer rule: no imports from api/, audit/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.results import FieldError
from core.config import get_settings

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects input longer than 72 bytes; validate_password() enforces
    that limit before any new password reaches this function.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than later ones.
DUMMY_HASH: str = hash_password("restaurant_timing_dummy")


def validate_password(plain: str) -> list[FieldError]:
    """Check a new password against the configured policy.

    Returns every violated rule, in a stable order, so the caller can show
    them all at once.
    """
    settings = get_settings()
    errors: list[FieldError] = []
    if len(plain) < settings.password_min_length:
        errors.append(FieldError("password", f"Password must be at least {settings.password_min_length} characters."))
    if settings.password_require_digit and not any(c.isdigit() for c in plain):
        errors.append(FieldError("password", "Password must contain at least one digit."))
    if settings.password_require_lowercase and not any(c.islower() for c in plain):
        errors.append(FieldError("password", "Password must contain at least one lowercase letter."))
    if settings.password_require_uppercase and not any(c.isupper() for c in plain):
        errors.append(FieldError("password", "Password must contain at least one uppercase letter."))
    if settings.password_require_non_alphanumeric and all(c.isalnum() for c in plain):
        errors.append(FieldError("password", "Password must contain at least one non-alphanumeric character."))
    if len(plain.encode("utf-8")) > 72:
        errors.append(FieldError("password", "Password must be at most 72 bytes long."))
    return errors


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def new_security_stamp() -> str:
    return secrets.token_hex(16)


def create_access_token(
    user_id: str,
    username: str,
    roles: list[str],
    security_stamp: str,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed JWT with user identity, roles and security stamp."""
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "roles": roles,
        "stamp": security_stamp,
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload or "stamp" not in payload:
        return None
    return payload


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly, samesite=lax cookie."""
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )


# ---------------------------------------------------------------------------
# Reset tokens
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    return secrets.token_urlsafe(32)


def hash_reset_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        get_settings().secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()
