"""
tests/test_verifiers.py -- Unit tests for auth/verifiers.py.

Covers:
  - LocalTokenVerifier: accepts own tokens, rejects foreign-key tokens
  - RemoteTokenVerifier: signature, issuer, audience, expiry; UNAVAILABLE on fetch failure;
    RSA key picked by kid from a mixed key set
  - JWKS cache: fetched once, refetched after expiry, single fetch under concurrent first use,
    failure backoff shared by concurrent requests
  - HybridTokenVerifier: remote first, local fallback, each scheme asked once,
    rejects when the key set is unreachable and no local token is valid
  - build_verifier: local-only without remote settings
"""

from __future__ import annotations

import base64
import threading
import time

import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import ec

from auth.models import VerificationResult, VerificationStatus
from auth.tokens import create_access_token
from auth.verifiers import (
    HybridTokenVerifier,
    LocalTokenVerifier,
    RemoteTokenVerifier,
    TokenVerifier,
    build_verifier,
)
from core.config import Settings


def _unreachable(url: str) -> dict:
    raise requests.ConnectionError(f"cannot reach {url}")


def _b64url_uint(value: int, length: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes(length, "big")).rstrip(b"=").decode()


def _ec_jwk(kid: str) -> dict:
    numbers = ec.generate_private_key(ec.SECP256R1()).public_key().public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "kid": kid,
        "use": "sig",
        "x": _b64url_uint(numbers.x, 32),
        "y": _b64url_uint(numbers.y, 32),
    }


class _CountingVerifier(TokenVerifier):
    def __init__(self, scheme: str, result: VerificationResult) -> None:
        self.scheme = scheme
        self.result = result
        self.calls = 0

    def verify(self, token: str) -> VerificationResult:
        self.calls += 1
        return self.result


class TestLocalVerifier:
    def test_accepts_own_token(self) -> None:
        """The verified subject is the internal id embedded in the token."""
        token = create_access_token("user-123", "ada@example.com", "user")
        result = LocalTokenVerifier().verify(token)
        assert result.status is VerificationStatus.OK
        assert result.identity.subject == "user-123"
        assert result.identity.email == "ada@example.com"
        assert result.identity.scheme == "local"

    def test_rejects_foreign_key(self) -> None:
        token = create_access_token("user-123", "ada@example.com", "user", secret_key="k" * 64)
        assert LocalTokenVerifier().verify(token).status is VerificationStatus.REJECTED


class TestRemoteVerifier:
    def test_accepts_valid_token(self, remote_idp) -> None:
        token = remote_idp.mint("sub-1", "ada@example.com")
        result = remote_idp.verifier().verify(token)
        assert result.ok
        assert result.identity.subject == "sub-1"
        assert result.identity.email == "ada@example.com"
        assert result.identity.scheme == "remote"

    def test_jwks_url_derived_from_issuer(self, remote_idp) -> None:
        remote_idp.verifier().verify(remote_idp.mint("sub-1", "ada@example.com"))
        assert remote_idp.fetched_urls == [f"{remote_idp.issuer}/.well-known/jwks.json"]

    def test_wrong_audience_rejected(self, remote_idp) -> None:
        token = remote_idp.mint("sub-1", "ada@example.com", aud="someone-else")
        assert remote_idp.verifier().verify(token).status is VerificationStatus.REJECTED

    def test_wrong_issuer_rejected(self, remote_idp) -> None:
        token = remote_idp.mint("sub-1", "ada@example.com", iss="https://evil.example.com")
        assert remote_idp.verifier().verify(token).status is VerificationStatus.REJECTED

    def test_expired_rejected(self, remote_idp) -> None:
        token = remote_idp.mint("sub-1", "ada@example.com", exp=int(time.time()) - 60)
        assert remote_idp.verifier().verify(token).status is VerificationStatus.REJECTED

    def test_local_token_rejected_by_remote(self, remote_idp) -> None:
        """An HS256 token never passes the RS256 verifier."""
        token = create_access_token("user-123", "ada@example.com", "user")
        assert remote_idp.verifier().verify(token).status is VerificationStatus.REJECTED

    def test_fetch_failure_is_unavailable(self, remote_idp) -> None:
        """An unreachable key set is UNAVAILABLE, not REJECTED and never OK."""
        verifier = remote_idp.verifier(fetcher=_unreachable)
        result = verifier.verify(remote_idp.mint("sub-1", "ada@example.com"))
        assert result.status is VerificationStatus.UNAVAILABLE
        assert result.identity is None

    def test_failed_fetch_retried_after_backoff(self, remote_idp) -> None:
        """A failure is remembered for the backoff window, then the fetch is retried."""
        attempts = {"n": 0}
        now = {"t": 1000.0}

        def flaky(url: str) -> dict:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise requests.Timeout("slow")
            return remote_idp.jwks

        verifier = RemoteTokenVerifier(
            issuer=remote_idp.issuer,
            audience=remote_idp.audience,
            fetcher=flaky,
            clock=lambda: now["t"],
            failure_backoff=10,
        )
        token = remote_idp.mint("sub-1", "ada@example.com")
        assert verifier.verify(token).status is VerificationStatus.UNAVAILABLE
        now["t"] += 5
        assert verifier.verify(token).status is VerificationStatus.UNAVAILABLE
        assert attempts["n"] == 1
        now["t"] += 6
        assert verifier.verify(token).ok
        assert attempts["n"] == 2

    def test_key_picked_by_kid_from_mixed_set(self, remote_idp) -> None:
        """Non-RSA entries in the key set are skipped, never parsed."""
        jwks = {"keys": [_ec_jwk("ec-1"), *remote_idp.jwks["keys"]]}
        verifier = remote_idp.verifier(fetcher=lambda url: jwks)
        assert verifier.verify(remote_idp.mint("sub-1", "ada@example.com")).ok

    def test_unknown_kid_rejected(self, remote_idp) -> None:
        jwks = {"keys": [dict(key, kid="rotated") for key in remote_idp.jwks["keys"]]}
        verifier = remote_idp.verifier(fetcher=lambda url: jwks)
        result = verifier.verify(remote_idp.mint("sub-1", "ada@example.com"))
        assert result.status is VerificationStatus.REJECTED

    def test_malformed_token_rejected(self, remote_idp) -> None:
        assert remote_idp.verifier().verify("not.a.jwt").status is VerificationStatus.REJECTED


class TestJwksCache:
    def test_fetched_once_while_fresh(self, remote_idp) -> None:
        verifier = remote_idp.verifier()
        for _ in range(5):
            assert verifier.verify(remote_idp.mint("sub-1", "ada@example.com")).ok
        assert remote_idp.fetch_count == 1

    def test_refetched_after_expiry(self, remote_idp) -> None:
        now = {"t": 1000.0}
        verifier = RemoteTokenVerifier(
            issuer=remote_idp.issuer,
            audience=remote_idp.audience,
            cache_seconds=60,
            fetcher=remote_idp.fetcher,
            clock=lambda: now["t"],
        )
        token = remote_idp.mint("sub-1", "ada@example.com")
        verifier.verify(token)
        now["t"] += 30
        verifier.verify(token)
        assert remote_idp.fetch_count == 1
        now["t"] += 31
        verifier.verify(token)
        assert remote_idp.fetch_count == 2

    def test_concurrent_first_use_fetches_once(self, remote_idp) -> None:
        """Many threads hitting a cold cache trigger exactly one fetch."""
        gate = threading.Event()

        def slow_fetch(url: str) -> dict:
            gate.wait(timeout=2)
            return remote_idp.fetcher(url)

        verifier = remote_idp.verifier(fetcher=slow_fetch)
        token = remote_idp.mint("sub-1", "ada@example.com")
        results: list[VerificationResult] = []
        lock = threading.Lock()

        def worker() -> None:
            r = verifier.verify(token)
            with lock:
                results.append(r)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        time.sleep(0.1)
        gate.set()
        for t in threads:
            t.join(timeout=5)

        assert remote_idp.fetch_count == 1
        assert len(results) == 8
        assert all(r.ok for r in results)

    def test_concurrent_requests_share_one_failed_fetch(self, remote_idp) -> None:
        """While the provider is down, queued requests do not each wait out a fetch."""
        attempts = {"n": 0}

        def slow_failure(url: str) -> dict:
            attempts["n"] += 1
            time.sleep(0.3)
            raise requests.Timeout("provider down")

        hybrid = HybridTokenVerifier([remote_idp.verifier(fetcher=slow_failure), LocalTokenVerifier()])
        token = create_access_token("user-123", "ada@example.com", "user")
        latencies: list[float] = []
        ok: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            started = time.monotonic()
            r = hybrid.verify(token)
            with lock:
                latencies.append(time.monotonic() - started)
                ok.append(r.ok)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert attempts["n"] == 1
        assert len(ok) == 8 and all(ok)
        assert max(latencies) < 1.0


class TestHybridVerifier:
    def test_remote_token_accepted(self, remote_idp) -> None:
        hybrid = HybridTokenVerifier([remote_idp.verifier(), LocalTokenVerifier()])
        result = hybrid.verify(remote_idp.mint("sub-1", "ada@example.com"))
        assert result.ok and result.identity.scheme == "remote"

    def test_local_token_falls_back(self, remote_idp) -> None:
        """Legacy local tokens keep working while the remote scheme is configured."""
        hybrid = HybridTokenVerifier([remote_idp.verifier(), LocalTokenVerifier()])
        result = hybrid.verify(create_access_token("user-123", "ada@example.com", "user"))
        assert result.ok and result.identity.scheme == "local"
        assert result.identity.subject == "user-123"

    def test_local_token_falls_back_past_non_rsa_keys(self, remote_idp) -> None:
        """A key set holding an EC key never turns a local token into an error."""
        jwks = {"keys": [_ec_jwk("ec-1"), *remote_idp.jwks["keys"]]}
        hybrid = HybridTokenVerifier([remote_idp.verifier(fetcher=lambda url: jwks), LocalTokenVerifier()])
        result = hybrid.verify(create_access_token("user-123", "ada@example.com", "user"))
        assert result.ok and result.identity.scheme == "local"

    def test_local_token_accepted_when_remote_unreachable(self, remote_idp) -> None:
        hybrid = HybridTokenVerifier([remote_idp.verifier(fetcher=_unreachable), LocalTokenVerifier()])
        assert hybrid.verify(create_access_token("user-123", "ada@example.com", "user")).ok

    def test_remote_token_rejected_when_remote_unreachable(self, remote_idp) -> None:
        """Unreachable key set + no valid local token: rejected, never authenticated."""
        hybrid = HybridTokenVerifier([remote_idp.verifier(fetcher=_unreachable), LocalTokenVerifier()])
        result = hybrid.verify(remote_idp.mint("sub-1", "ada@example.com"))
        assert result.status is VerificationStatus.REJECTED
        assert result.identity is None

    def test_each_scheme_asked_once(self) -> None:
        remote = _CountingVerifier("remote", VerificationResult.unavailable("down"))
        local = _CountingVerifier("local", VerificationResult.reject("bad"))
        result = HybridTokenVerifier([remote, local]).verify("tok")
        assert not result.ok
        assert remote.calls == 1
        assert local.calls == 1

    def test_stops_at_first_success(self) -> None:
        first = _CountingVerifier("remote", VerificationResult.reject("bad"))
        second = _CountingVerifier("local", LocalTokenVerifier().verify(create_access_token("u", "e@x.io", "user")))
        third = _CountingVerifier("other", VerificationResult.reject("bad"))
        assert HybridTokenVerifier([first, second, third]).verify("tok").ok
        assert third.calls == 0

    def test_empty_chain_refused(self) -> None:
        with pytest.raises(ValueError):
            HybridTokenVerifier([])


class TestBuildVerifier:
    def test_local_only_without_remote_settings(self) -> None:
        settings = Settings(debug=True, remote_idp_region="eu-west-1")
        verifier = build_verifier(settings)
        assert [v.scheme for v in verifier.verifiers] == ["local"]

    def test_remote_first_when_configured(self) -> None:
        settings = Settings(
            debug=True,
            remote_idp_region="eu-west-1",
            remote_idp_pool_id="eu-west-1_abc",
            remote_idp_client_id="client",
        )
        verifier = build_verifier(settings)
        assert [v.scheme for v in verifier.verifiers] == ["remote", "local"]
        assert verifier.verifiers[0].issuer == "https://cognito-idp.eu-west-1.amazonaws.com/eu-west-1_abc"
        assert verifier.verifiers[0].audience == "client"
