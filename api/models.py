"""
API request and response models for Goalmap REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
tenancy/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.context import RequestContext
from tenancy.models import Membership, Organization, Project, ProjectMembership

# ---------------------------------------------------------------------------
# Enums -- roles a caller may assign through the API
#
# Owner roles are deliberately absent: the creator becomes owner, and
# ownership is only ever granted by promoting an existing member.
# ---------------------------------------------------------------------------


class AssignableOrgRole(str, Enum):
    admin = "admin"
    member = "member"


class OrgRoleUpdate(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"


class AssignableProjectRole(str, Enum):
    project_admin = "project_admin"
    project_member = "project_member"
    viewer = "viewer"


class ProjectRoleUpdate(str, Enum):
    project_owner = "project_owner"
    project_admin = "project_admin"
    project_member = "project_member"
    viewer = "viewer"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    username: Optional[str] = Field(default=None, min_length=1, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=72)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    email: str
    role: str


class MeResponse(BaseModel):
    """Identity of the authenticated principal."""

    user_id: str
    email: str
    username: str
    role: str
    remote_linked: bool
    last_active_org_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


class ScopeRef(BaseModel):
    id: str
    role: str


class ContextResponse(BaseModel):
    """Serialized RequestContext for GET /api/v1/me/context."""

    user_id: str
    real_user_id: str
    impersonating: bool
    org: Optional[ScopeRef] = None
    project: Optional[ScopeRef] = None
    permissions: list[str]
    limits: dict
    flags: dict

    @classmethod
    def from_context(cls, ctx: RequestContext) -> "ContextResponse":
        return cls(**ctx.to_dict())


class SwitchOrgRequest(BaseModel):
    org_id: str = Field(min_length=36, max_length=36)


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class OrganizationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=100)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class OrganizationUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class OrganizationResponse(BaseModel):
    id: str
    name: str
    color: Optional[str] = None
    created_by_user_id: str
    created_at: Optional[str] = None
    role: Optional[str] = None  # caller's role, where known

    @classmethod
    def from_org(cls, org: Organization, role: Optional[str] = None) -> "OrganizationResponse":
        return cls(
            id=org.id,
            name=org.name,
            color=org.color,
            created_by_user_id=org.created_by_user_id,
            created_at=org.created_at,
            role=role,
        )


class MemberAdd(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role: AssignableOrgRole = AssignableOrgRole.member


class MemberRoleUpdate(BaseModel):
    role: OrgRoleUpdate


class MemberResponse(BaseModel):
    user_id: str
    role: str
    email: Optional[str] = None
    username: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_membership(cls, m: Membership | ProjectMembership) -> "MemberResponse":
        return cls(
            user_id=m.user_id,
            role=m.role.value,
            email=m.email,
            username=m.username,
            created_at=m.created_at,
        )


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class ProjectCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)


class ProjectUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)


class ProjectResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    created_by_user_id: str
    created_at: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_project(cls, p: Project, role: Optional[str] = None) -> "ProjectResponse":
        return cls(
            id=p.id,
            organization_id=p.organization_id,
            name=p.name,
            description=p.description,
            created_by_user_id=p.created_by_user_id,
            created_at=p.created_at,
            role=role,
        )


class ProjectMemberAdd(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role: AssignableProjectRole = AssignableProjectRole.project_member


class ProjectMemberRoleUpdate(BaseModel):
    role: ProjectRoleUpdate


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class PermissionRuleIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    scope: str = Field(pattern=r"^(organization|project)$")
    role: str = Field(min_length=1, max_length=30)
    action: str = Field(min_length=1, max_length=100, pattern=r"^[a-z_]+(\.[a-z_]+)+$")


class PermissionRulesResponse(BaseModel):
    """Stored rules plus the in-memory map currently used for decisions.

    The two differ between a rule change and the next reload.
    """

    rules: list[PermissionRuleIn]
    loaded: dict[str, list[str]]


class ReloadResponse(BaseModel):
    rules_loaded: int


class TenantDocument(BaseModel):
    """Per-org limits or feature flags document."""

    values: dict = Field(default_factory=dict)
