"""
auth/verifiers.py -- Bearer token verifiers for the two coexisting schemes.

Strategy / chain of responsibility:
  LocalTokenVerifier   HS256 tokens issued by POST /auth/login.
  RemoteTokenVerifier  RS256 tokens issued by the remote identity provider,
                       validated against its published JWKS.
  HybridTokenVerifier  Ordered list of the above. Remote first when it is
                       configured, then local. Each verifier is asked exactly
                       once; the first OK wins.

Every verifier returns a VerificationResult instead of raising, with a
tri-state status so the chain can tell "token invalid" (REJECTED) from
"could not check" (UNAVAILABLE). The hybrid currently treats both the same
way and moves on to the next scheme; it never authenticates on UNAVAILABLE.

JWKS caching:
  The key set is fetched lazily on first use and cached for
  Settings.jwks_cache_seconds. The fetch runs under a lock with a second
  check inside it, so concurrent first requests trigger exactly one fetch.
  A failed fetch is remembered for failure_backoff seconds: requests that
  were queued behind it, and any that arrive in that window, get
  UNAVAILABLE at once instead of each waiting out another timeout.

Key selection:
  Only RSA entries are candidates. When the token header carries a kid the
  candidates narrow to that kid. Any python-jose error while decoding is a
  REJECTED result, never an exception.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence

import requests
from jose import jwt
from jose.exceptions import JOSEError

from auth.models import VerificationResult, VerificationStatus, VerifiedIdentity
from auth.tokens import decode_access_token
from core.config import Settings

logger = logging.getLogger("goalmap.auth.verifiers")

JwksFetcher = Callable[[str], dict]


class TokenVerifier:
    """Base class. Subclasses implement verify()."""

    scheme = "base"

    def verify(self, token: str) -> VerificationResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Local scheme
# ---------------------------------------------------------------------------


class LocalTokenVerifier(TokenVerifier):
    """Verifies locally-issued HS256 tokens carrying {id, email, role}."""

    scheme = "local"

    def verify(self, token: str) -> VerificationResult:
        payload = decode_access_token(token)
        if payload is None:
            return VerificationResult.reject("invalid local token")
        identity = VerifiedIdentity(
            subject=payload["id"],
            email=payload.get("email"),
            claims=payload,
            scheme=self.scheme,
        )
        return VerificationResult.accept(identity)


# ---------------------------------------------------------------------------
# Remote scheme
# ---------------------------------------------------------------------------


def fetch_jwks(url: str, timeout: float = 5.0) -> dict:
    """GET the JWKS document. Raises requests.RequestException or ValueError on failure."""
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    doc = resp.json()
    if not isinstance(doc, dict) or not isinstance(doc.get("keys"), list):
        raise ValueError("JWKS document has no 'keys' list")
    return doc


class JwksUnavailable(Exception):
    """The key set could not be fetched, now or within the backoff window."""


class RemoteTokenVerifier(TokenVerifier):
    """Verifies RS256 tokens from the remote identity provider.

    Checks signature, expiry, issuer and audience (the app client id).
    fetcher is injectable so tests can serve a local JWKS or simulate an
    unreachable provider without network access.
    """

    scheme = "remote"

    def __init__(
        self,
        issuer: str,
        audience: str,
        cache_seconds: int = 3600,
        timeout: float = 5.0,
        fetcher: JwksFetcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        failure_backoff: float = 30.0,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self.audience = audience
        self.jwks_url = f"{self.issuer}/.well-known/jwks.json"
        self.cache_seconds = cache_seconds
        self.failure_backoff = failure_backoff
        self._fetcher = fetcher or (lambda url: fetch_jwks(url, timeout=timeout))
        self._clock = clock
        self._lock = threading.Lock()
        self._jwks: dict | None = None
        self._fetched_at = 0.0
        self._failed_at: float | None = None
        self._last_error = ""

    def _cache_fresh(self) -> bool:
        return self._jwks is not None and (self._clock() - self._fetched_at) < self.cache_seconds

    def _backing_off(self) -> bool:
        return self._failed_at is not None and (self._clock() - self._failed_at) < self.failure_backoff

    def get_jwks(self) -> dict:
        """Return the cached key set, fetching it once if missing or expired.

        Raises JwksUnavailable when the fetch fails or a recent one did.
        """
        if self._cache_fresh():
            return self._jwks
        if self._backing_off():
            raise JwksUnavailable(self._last_error)
        with self._lock:
            if self._cache_fresh():
                return self._jwks
            if self._backing_off():
                raise JwksUnavailable(self._last_error)
            try:
                jwks = self._fetcher(self.jwks_url)
            except (requests.RequestException, ValueError) as exc:
                self._failed_at = self._clock()
                self._last_error = str(exc)
                logger.warning("JWKS fetch from %s failed: %s", self.jwks_url, exc)
                raise JwksUnavailable(str(exc)) from exc
            self._jwks = jwks
            self._fetched_at = self._clock()
            self._failed_at = None
            logger.info("Fetched JWKS from %s (%d keys)", self.jwks_url, len(jwks.get("keys", [])))
            return jwks

    @staticmethod
    def _candidate_keys(token: str, jwks: dict) -> list[dict]:
        """RSA keys from the set, narrowed to the header kid when there is one."""
        kid = jwt.get_unverified_header(token).get("kid")
        return [
            key
            for key in jwks.get("keys", [])
            if isinstance(key, dict) and key.get("kty") == "RSA" and (kid is None or key.get("kid") == kid)
        ]

    def verify(self, token: str) -> VerificationResult:
        try:
            jwks = self.get_jwks()
        except JwksUnavailable:
            return VerificationResult.unavailable("key set unavailable")

        try:
            keys = self._candidate_keys(token, jwks)
            if not keys:
                return VerificationResult.reject("no matching signing key")
            claims = jwt.decode(
                token,
                {"keys": keys},
                algorithms=["RS256"],
                audience=self.audience,
                issuer=self.issuer,
            )
        except JOSEError:
            return VerificationResult.reject("invalid remote token")

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            return VerificationResult.reject("remote token has no subject")
        identity = VerifiedIdentity(
            subject=subject,
            email=claims.get("email"),
            claims=claims,
            scheme=self.scheme,
        )
        return VerificationResult.accept(identity)


# ---------------------------------------------------------------------------
# Hybrid chain
# ---------------------------------------------------------------------------


class HybridTokenVerifier(TokenVerifier):
    """Ask each verifier once, in order. First OK wins; otherwise reject."""

    scheme = "hybrid"

    def __init__(self, verifiers: Sequence[TokenVerifier]) -> None:
        if not verifiers:
            raise ValueError("HybridTokenVerifier needs at least one verifier")
        self.verifiers = list(verifiers)

    def verify(self, token: str) -> VerificationResult:
        outcomes: list[str] = []
        for verifier in self.verifiers:
            result = verifier.verify(token)
            if result.ok:
                return result
            outcomes.append(f"{verifier.scheme}:{result.status.value}")
            if result.status is VerificationStatus.UNAVAILABLE:
                logger.warning("%s scheme unavailable, falling back", verifier.scheme)
        return VerificationResult.reject("; ".join(outcomes))


def build_verifier(settings: Settings, fetcher: JwksFetcher | None = None) -> HybridTokenVerifier:
    """Build the verifier chain for the current configuration.

    Without complete remote identity provider settings the chain is local-only.
    """
    chain: list[TokenVerifier] = []
    if settings.remote_configured:
        chain.append(
            RemoteTokenVerifier(
                issuer=settings.remote_issuer,
                audience=settings.remote_idp_client_id,
                cache_seconds=settings.jwks_cache_seconds,
                timeout=settings.jwks_timeout_seconds,
                fetcher=fetcher,
                failure_backoff=settings.jwks_failure_backoff_seconds,
            )
        )
    else:
        logger.info("Remote identity provider not configured; local tokens only")
    chain.append(LocalTokenVerifier())
    return HybridTokenVerifier(chain)
