"""
tests/conftest.py -- Shared test fixtures for Goalmap tests.

This module provides:
  - engine / user_store / tenancy / permission_engine / context_builder:
    function-scoped stores on a fresh file-backed SQLite database
  - remote_idp: an RSA key pair, its JWKS and a helper to mint remote tokens
  - api_env: module-scoped TestClient over the real app with a patched
    lifespan, plus helpers to create users and auth headers
  - api_client: (client, admin_token, admin_id) view of api_env

Design: file-backed SQLite under tmp_path (not shared-memory URIs). The
request-scoped RLS transaction and the context builder's own reads use
different pooled connections at the same time; shared-cache in-memory
databases take table locks that would make those readers block, while a
WAL file database lets them proceed.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.main import app
from auth.context import ContextBuilder
from auth.models import User
from auth.permissions import PermissionEngine
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from auth.verifiers import HybridTokenVerifier, LocalTokenVerifier, RemoteTokenVerifier
from core.database import init_schema, make_engine
from tenancy.store import TenancyStore

REMOTE_ISSUER = "https://cognito-idp.eu-west-1.amazonaws.com/eu-west-1_testpool"
REMOTE_CLIENT_ID = "goalmap-test-client"
REMOTE_KID = "test-key-1"

TEST_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


def _new_engine(directory) -> Engine:
    engine = make_engine(f"sqlite:///{directory / 'goalmap_test.db'}")
    init_schema(engine)
    return engine


@pytest.fixture()
def engine(tmp_path) -> Generator[Engine, None, None]:
    eng = _new_engine(tmp_path)
    yield eng
    eng.dispose()


@pytest.fixture()
def user_store(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture()
def tenancy(engine) -> TenancyStore:
    store = TenancyStore(engine)
    store.seed_default_permissions()
    return store


@pytest.fixture()
def permission_engine(tenancy) -> PermissionEngine:
    pe = PermissionEngine(tenancy)
    pe.reload()
    return pe


@pytest.fixture()
def context_builder(user_store, tenancy, permission_engine) -> ContextBuilder:
    return ContextBuilder(user_store, tenancy, permission_engine)


def make_user(store: UserStore, email: str, role: str = "user", password: str | None = TEST_PASSWORD) -> str:
    """Insert a local user and return its id."""
    return store.create_user(
        User(
            email=email,
            username=email.split("@", 1)[0],
            role=role,
            hashed_password=hash_password(password) if password else None,
        )
    )


# ---------------------------------------------------------------------------
# Remote identity provider
# ---------------------------------------------------------------------------


@dataclass
class RemoteIdp:
    private_pem: bytes
    jwks: dict
    issuer: str = REMOTE_ISSUER
    audience: str = REMOTE_CLIENT_ID
    fetch_count: int = 0
    fetched_urls: list = field(default_factory=list)

    def mint(self, sub: str, email: str | None = None, **overrides) -> str:
        """Sign a remote-scheme token. overrides replace or add claims."""
        claims = {
            "sub": sub,
            "iss": self.issuer,
            "aud": self.audience,
            "exp": int(time.time()) + 3600,
            "iat": int(time.time()),
            "token_use": "id",
        }
        if email is not None:
            claims["email"] = email
        claims.update(overrides)
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers={"kid": REMOTE_KID})

    def fetcher(self, url: str) -> dict:
        self.fetch_count += 1
        self.fetched_urls.append(url)
        return self.jwks

    def verifier(self, fetcher=None) -> RemoteTokenVerifier:
        return RemoteTokenVerifier(
            issuer=self.issuer,
            audience=self.audience,
            fetcher=fetcher or self.fetcher,
        )


def _generate_rsa_pem() -> tuple[bytes, bytes]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


@pytest.fixture(scope="session")
def rsa_keys() -> tuple[bytes, bytes]:
    """One RSA key pair per test session -- generation is slow."""
    return _generate_rsa_pem()


@pytest.fixture()
def remote_idp(rsa_keys) -> RemoteIdp:
    private_pem, public_pem = rsa_keys
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk.update({"kid": REMOTE_KID, "use": "sig", "alg": "RS256"})
    return RemoteIdp(private_pem=private_pem, jwks={"keys": [public_jwk]})


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    engine: Engine
    user_store: UserStore
    tenancy: TenancyStore
    permission_engine: PermissionEngine
    idp: RemoteIdp
    admin_id: str
    admin_token: str
    _counter: int = 0

    def new_user(self, prefix: str = "user", role: str = "user") -> tuple[str, dict]:
        """Create a local user; return (user_id, Authorization headers)."""
        self._counter += 1
        email = f"{prefix}{self._counter}@example.com"
        uid = make_user(self.user_store, email, role=role)
        token = create_access_token(uid, email, role)
        return uid, {"Authorization": f"Bearer {token}"}


def _patch_lifespan(env_state: dict):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test collaborators into app.state so TestClient routes
    see the isolated test database rather than the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for name, value in env_state.items():
            setattr(app.state, name, value)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_env(tmp_path_factory, rsa_keys) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for API integration tests.

    The verifier chain is remote (served from a local JWKS) then local,
    matching a deployment with the remote identity provider configured.
    """
    eng = _new_engine(tmp_path_factory.mktemp("api"))
    users = UserStore(eng)
    tenancy_store = TenancyStore(eng)
    tenancy_store.seed_default_permissions()
    pe = PermissionEngine(tenancy_store)
    pe.reload()

    private_pem, public_pem = rsa_keys
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk.update({"kid": REMOTE_KID, "use": "sig", "alg": "RS256"})
    idp = RemoteIdp(private_pem=private_pem, jwks={"keys": [public_jwk]})

    verifier = HybridTokenVerifier([idp.verifier(), LocalTokenVerifier()])
    admin_id = make_user(users, "admin@example.com", role="admin")
    admin_token = create_access_token(admin_id, "admin@example.com", "admin")

    app.router.lifespan_context = _patch_lifespan(
        {
            "engine": eng,
            "user_store": users,
            "tenancy": tenancy_store,
            "permission_engine": pe,
            "verifier": verifier,
            "context_builder": ContextBuilder(users, tenancy_store, pe),
        }
    )
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiEnv(
            client=client,
            engine=eng,
            user_store=users,
            tenancy=tenancy_store,
            permission_engine=pe,
            idp=idp,
            admin_id=admin_id,
            admin_token=admin_token,
        )

    eng.dispose()


@pytest.fixture(scope="module")
def api_client(api_env) -> tuple[TestClient, str, str]:
    """Yield (client, token, user_id) for the admin user."""
    return api_env.client, api_env.admin_token, api_env.admin_id
