"""
auth/tokens.py -- Local token issuing, password hashing, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Locally-issued tokens are signed with
       SECRET_KEY and carry {id, email, role} plus a fixed 30-day expiry.
       Decoding returns None on any failure -- expired, wrong key and
       malformed all look the same to the caller, which turns None into a
       generic 401.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  Token extraction: Authorization: Bearer <token> wins over the access_token
       cookie. A stale cookie left behind by the browser must never override
       the credential an API client explicitly sent.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from fastapi import Request, Response

    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("goalmap.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

ALGORITHM = "HS256"
ACCESS_COOKIE = "access_token"
ORG_COOKIE = "active_org_id"
PROJECT_COOKIE = "active_project_id"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input past 72 bytes. The API layer caps passwords at
    72 characters so nothing is silently dropped for ASCII passwords.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed hash in the DB
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("goalmap_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, email: str, role: str, secret_key: str | None = None) -> str:
    """Encode a signed local token carrying {id, email, role}.

    Expiry is fixed at Settings.token_expire_seconds (30 days by default).
    secret_key overrides the configured key -- used by tests to mint tokens
    signed with a foreign key.
    """
    expire = datetime.now(timezone.utc) + timedelta(seconds=_settings.token_expire_seconds)
    payload = {
        "id": user_id,
        "email": email,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, secret_key or _settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a local token. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("id"), str) or "role" not in payload:
        return None
    return payload


def extract_token(request: Request) -> str | None:
    """Return the bearer credential for this request, header first, then cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE) or None


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate a local email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email or remote-only user: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response: Response, token: str) -> None:
    """Write the local token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.token_expire_seconds,
    )


def set_context_cookie(response: Response, name: str, value: str) -> None:
    """Persist the last switched org/project selection (30 days by default)."""
    response.set_cookie(
        name,
        value=value,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.context_cookie_max_age,
    )
