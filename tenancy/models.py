"""
tenancy/models.py -- Domain dataclasses and role vocabularies for tenancy.

Pattern: Data class (pure data container, zero logic). Stores and guards do
the work. Roles and scopes are closed enums so a typo in a rule or a guard
fails loudly instead of silently never matching.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Scope(str, Enum):
    """Where a permission rule applies."""

    ORGANIZATION = "organization"
    PROJECT = "project"


class OrgRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class ProjectRole(str, Enum):
    PROJECT_OWNER = "project_owner"
    PROJECT_ADMIN = "project_admin"
    PROJECT_MEMBER = "project_member"
    VIEWER = "viewer"


@dataclass
class Organization:
    """A tenant. Every organization keeps at least one owner membership."""

    name: str
    created_by_user_id: str
    id: str | None = None
    color: str | None = None
    created_at: str | None = None


@dataclass
class Membership:
    organization_id: str
    user_id: str
    role: OrgRole
    created_at: str | None = None
    email: str | None = None  # joined from users for member listings
    username: str | None = None


@dataclass
class Project:
    """A sub-tenant scoped to exactly one organization."""

    organization_id: str
    name: str
    created_by_user_id: str
    id: str | None = None
    description: str | None = None
    created_at: str | None = None


@dataclass
class ProjectMembership:
    project_id: str
    user_id: str
    role: ProjectRole
    created_at: str | None = None
    email: str | None = None
    username: str | None = None


@dataclass(frozen=True)
class PermissionRule:
    """A principal holding `role` at `scope` may perform `action`."""

    scope: Scope
    role: str
    action: str
