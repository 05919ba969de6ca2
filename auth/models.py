"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in tenancy/models.py -- dataclasses own domain shape; stores, verifiers and
guards do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class User:
    """Represents a principal in Goalmap.

    user_id is the stable internal key every other table references.

    remote_subject is the remote identity provider's `sub` claim. It is NULL
    for users who have only ever signed in with a locally-issued token and is
    backfilled by UserStore.ensure_principal() on their first remote login.

    hashed_password is None for remote-only users (they have no local password).

    role is the legacy coarse role ("user" or "admin"). Tenant authorization
    never reads it; only administrative routes and impersonation do.
    """

    email: str
    username: str
    role: str = "user"
    user_id: str | None = None
    hashed_password: str | None = None
    remote_subject: str | None = None
    last_active_org_id: str | None = None
    created_at: str | None = None


class VerificationStatus(str, Enum):
    """Outcome of a single verifier.

    REJECTED means the token is bad for this scheme. UNAVAILABLE means the
    scheme could not decide (e.g. the key set could not be fetched).
    """

    OK = "ok"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class VerifiedIdentity:
    subject: str
    email: str | None
    claims: dict = field(default_factory=dict)
    scheme: str = "local"  # "local" | "remote"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    identity: VerifiedIdentity | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is VerificationStatus.OK

    @classmethod
    def accept(cls, identity: VerifiedIdentity) -> VerificationResult:
        return cls(VerificationStatus.OK, identity)

    @classmethod
    def reject(cls, reason: str) -> VerificationResult:
        return cls(VerificationStatus.REJECTED, reason=reason)

    @classmethod
    def unavailable(cls, reason: str) -> VerificationResult:
        return cls(VerificationStatus.UNAVAILABLE, reason=reason)
