"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Local token round trip carries {id, email, role} and a ~30 day expiry
  - Tokens signed with another key, expired tokens and garbage are rejected
  - Bearer header beats the access_token cookie
  - authenticate_user() success, wrong password, unknown email, remote-only user
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import jwt
from starlette.requests import Request

from auth.tokens import (
    ALGORITHM,
    authenticate_user,
    create_access_token,
    decode_access_token,
    extract_token,
    hash_password,
    verify_password,
)
from core.config import get_settings
from conftest import TEST_PASSWORD, make_user


def _request(headers: dict | None = None, cookies: dict | None = None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie_header.encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw_headers})


class TestLocalTokens:
    def test_round_trip_carries_identity(self) -> None:
        """decode_access_token returns the id, email and role the token was minted with."""
        token = create_access_token("3f2a0c1e-0000-4000-8000-000000000001", "ada@example.com", "user")
        payload = decode_access_token(token)
        assert payload is not None
        assert payload["id"] == "3f2a0c1e-0000-4000-8000-000000000001"
        assert payload["email"] == "ada@example.com"
        assert payload["role"] == "user"

    def test_expiry_is_thirty_days(self) -> None:
        """The exp claim sits token_expire_seconds (30 days) in the future."""
        token = create_access_token("u1", "ada@example.com", "user")
        payload = decode_access_token(token)
        exp = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        expected = datetime.now(timezone.utc) + timedelta(seconds=get_settings().token_expire_seconds)
        assert abs((exp - expected).total_seconds()) < 60
        assert get_settings().token_expire_seconds == 30 * 24 * 60 * 60

    def test_foreign_key_rejected(self) -> None:
        """A token signed with a different secret never decodes."""
        token = create_access_token("u1", "ada@example.com", "user", secret_key="x" * 64)
        assert decode_access_token(token) is None

    def test_expired_token_rejected(self) -> None:
        payload = {
            "id": "u1",
            "email": "ada@example.com",
            "role": "user",
            "exp": datetime.now(timezone.utc) - timedelta(seconds=5),
        }
        token = jwt.encode(payload, get_settings().secret_key, algorithm=ALGORITHM)
        assert decode_access_token(token) is None

    def test_token_without_id_rejected(self) -> None:
        """A correctly signed token lacking the id claim is not a local token."""
        payload = {"sub": "u1", "role": "user", "exp": datetime.now(timezone.utc) + timedelta(hours=1)}
        token = jwt.encode(payload, get_settings().secret_key, algorithm=ALGORITHM)
        assert decode_access_token(token) is None

    def test_garbage_rejected(self) -> None:
        assert decode_access_token("not-a-jwt") is None
        assert decode_access_token("") is None


class TestExtractToken:
    def test_header_beats_cookie(self) -> None:
        """Authorization: Bearer wins when both carriers are present."""
        req = _request(headers={"Authorization": "Bearer header-token"}, cookies={"access_token": "cookie-token"})
        assert extract_token(req) == "header-token"

    def test_cookie_used_without_header(self) -> None:
        req = _request(cookies={"access_token": "cookie-token"})
        assert extract_token(req) == "cookie-token"

    def test_non_bearer_header_falls_back_to_cookie(self) -> None:
        req = _request(headers={"Authorization": "Basic abc"}, cookies={"access_token": "cookie-token"})
        assert extract_token(req) == "cookie-token"

    def test_nothing_present(self) -> None:
        assert extract_token(_request()) is None


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret-pass")
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_is_false(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_authenticate_user(self, user_store) -> None:
        uid = make_user(user_store, "grace@example.com")
        user = authenticate_user(user_store, "grace@example.com", TEST_PASSWORD)
        assert user is not None and user.user_id == uid

    def test_authenticate_is_case_insensitive_on_email(self, user_store) -> None:
        make_user(user_store, "grace@example.com")
        assert authenticate_user(user_store, "Grace@Example.com", TEST_PASSWORD) is not None

    def test_authenticate_wrong_password(self, user_store) -> None:
        make_user(user_store, "grace@example.com")
        assert authenticate_user(user_store, "grace@example.com", "nope") is None

    def test_authenticate_unknown_email(self, user_store) -> None:
        assert authenticate_user(user_store, "nobody@example.com", TEST_PASSWORD) is None

    def test_authenticate_remote_only_user(self, user_store) -> None:
        """Users without a local password cannot log in with one."""
        make_user(user_store, "remote@example.com", password=None)
        assert authenticate_user(user_store, "remote@example.com", "") is None
