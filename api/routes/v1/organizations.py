"""
api/routes/v1/organizations.py -- Organization and membership endpoints.

Routes:
  GET    /api/v1/organizations                          -- caller's orgs
  POST   /api/v1/organizations                          -- create; caller becomes owner
  POST   /api/v1/organizations/{org_id}/switch          -- make org active
  GET    /api/v1/organizations/{org_id}                 -- org detail (any member)
  PATCH  /api/v1/organizations/{org_id}                 -- org.update
  DELETE /api/v1/organizations/{org_id}                 -- org.delete
  GET    /api/v1/organizations/{org_id}/members         -- members.view
  POST   /api/v1/organizations/{org_id}/members         -- members.invite
  PATCH  /api/v1/organizations/{org_id}/members/{uid}   -- members.update_role
  DELETE /api/v1/organizations/{org_id}/members/{uid}   -- members.remove

The {org_id} route parameter feeds the org guard (after x-org-id). When a
header names a different org than the path the request is rejected, so a
handler never acts on an org other than the one it was authorized for.

Writes run on the request's tenant-tagged session (auth/rls.py) and commit
or roll back with the request.

Invariant: an organization never loses its last owner -- enforced in
TenancyStore, surfaced here as 400 last_owner.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Connection

from api.models import (
    MemberAdd,
    MemberResponse,
    MemberRoleUpdate,
    MessageResponse,
    OrganizationCreate,
    OrganizationResponse,
    OrganizationUpdate,
)
from api.routes.v1.me import switch_to_org
from auth.context import RequestContext
from auth.dependencies import get_effective_principal, require_org_context, require_permission
from auth.models import User
from auth.rls import get_tenant_session, get_user_session
from tenancy.models import Organization, OrgRole
from tenancy.store import LastOwnerError, MembershipExistsError, NotFoundError, TenancyStore

logger = logging.getLogger("goalmap.api")

router = APIRouter()


def _ensure_path_org(ctx: RequestContext, org_id: str) -> None:
    if ctx.org.id != org_id:
        raise HTTPException(
            status_code=403,
            detail={
                "code": "org_context_required",
                "message": "Organization context required. Select an organization you belong to.",
            },
        )


def _tenancy(request: Request) -> TenancyStore:
    return request.app.state.tenancy


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@router.get("/organizations", response_model=list[OrganizationResponse])
def list_organizations(
    request: Request,
    user: User = Depends(get_effective_principal),
    conn: Connection = Depends(get_user_session),
) -> list[OrganizationResponse]:
    return [
        OrganizationResponse.from_org(org, role.value)
        for org, role in _tenancy(request).list_organizations_for_user(user.user_id, conn=conn)
    ]


@router.post("/organizations", response_model=OrganizationResponse, status_code=201)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    user: User = Depends(get_effective_principal),
    conn: Connection = Depends(get_user_session),
) -> OrganizationResponse:
    """Create an organization. Needs no org context -- this is how onboarding starts."""
    tenancy = _tenancy(request)
    org = Organization(name=body.name, color=body.color, created_by_user_id=user.user_id)
    org.id = tenancy.create_organization(org, conn=conn)
    created = tenancy.get_organization(org.id, conn=conn)
    return OrganizationResponse.from_org(created, OrgRole.OWNER.value)


@router.post("/organizations/{org_id}/switch", response_model=None)
def switch_organization(
    request: Request,
    org_id: str,
    user: User = Depends(get_effective_principal),
    conn: Connection = Depends(get_user_session),
) -> JSONResponse:
    return switch_to_org(request, user, org_id, conn)


@router.get("/organizations/{org_id}", response_model=OrganizationResponse)
def get_organization(
    request: Request,
    org_id: str,
    ctx: RequestContext = Depends(require_org_context),
    conn: Connection = Depends(get_tenant_session),
) -> OrganizationResponse:
    _ensure_path_org(ctx, org_id)
    org = _tenancy(request).get_organization(org_id, conn=conn)
    if org is None:
        # deleted between context resolution and this read
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Organization not found."})
    return OrganizationResponse.from_org(org, ctx.org.role.value)


@router.patch("/organizations/{org_id}", response_model=OrganizationResponse)
def update_organization(
    request: Request,
    org_id: str,
    body: OrganizationUpdate,
    ctx: RequestContext = Depends(require_permission("org.update")),
    conn: Connection = Depends(get_tenant_session),
) -> OrganizationResponse:
    _ensure_path_org(ctx, org_id)
    tenancy = _tenancy(request)
    tenancy.update_organization(org_id, name=body.name, color=body.color, conn=conn)
    return OrganizationResponse.from_org(tenancy.get_organization(org_id, conn=conn), ctx.org.role.value)


@router.delete("/organizations/{org_id}", response_model=MessageResponse)
def delete_organization(
    request: Request,
    org_id: str,
    ctx: RequestContext = Depends(require_permission("org.delete")),
    conn: Connection = Depends(get_tenant_session),
) -> MessageResponse:
    _ensure_path_org(ctx, org_id)
    _tenancy(request).delete_organization(org_id, conn=conn)
    logger.info("Organization %s deleted by %s", org_id, ctx.actor.real_user_id)
    return MessageResponse(message="Organization deleted.")


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.get("/organizations/{org_id}/members", response_model=list[MemberResponse])
def list_members(
    request: Request,
    org_id: str,
    ctx: RequestContext = Depends(require_permission("members.view")),
    conn: Connection = Depends(get_tenant_session),
) -> list[MemberResponse]:
    _ensure_path_org(ctx, org_id)
    return [MemberResponse.from_membership(m) for m in _tenancy(request).list_members(org_id, conn=conn)]


@router.post("/organizations/{org_id}/members", response_model=MemberResponse, status_code=201)
def add_member(
    request: Request,
    org_id: str,
    body: MemberAdd,
    ctx: RequestContext = Depends(require_permission("members.invite")),
    conn: Connection = Depends(get_tenant_session),
) -> MemberResponse:
    """Add an existing user (by email) as admin or member."""
    _ensure_path_org(ctx, org_id)
    target = request.app.state.user_store.get_by_email(str(body.email))
    if target is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    try:
        membership = _tenancy(request).add_member(org_id, target.user_id, OrgRole(body.role.value), conn=conn)
    except MembershipExistsError as exc:
        raise HTTPException(status_code=409, detail={"code": "already_member", "message": str(exc)})
    membership.email = target.email
    membership.username = target.username
    return MemberResponse.from_membership(membership)


@router.patch("/organizations/{org_id}/members/{user_id}", response_model=MemberResponse)
def update_member_role(
    request: Request,
    org_id: str,
    user_id: str,
    body: MemberRoleUpdate,
    ctx: RequestContext = Depends(require_permission("members.update_role")),
    conn: Connection = Depends(get_tenant_session),
) -> MemberResponse:
    _ensure_path_org(ctx, org_id)
    try:
        membership = _tenancy(request).update_member_role(org_id, user_id, OrgRole(body.role.value), conn=conn)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)})
    except LastOwnerError as exc:
        raise HTTPException(status_code=400, detail={"code": "last_owner", "message": str(exc)})
    return MemberResponse.from_membership(membership)


@router.delete("/organizations/{org_id}/members/{user_id}", response_model=MessageResponse)
def remove_member(
    request: Request,
    org_id: str,
    user_id: str,
    ctx: RequestContext = Depends(require_permission("members.remove")),
    conn: Connection = Depends(get_tenant_session),
) -> MessageResponse:
    _ensure_path_org(ctx, org_id)
    try:
        _tenancy(request).remove_member(org_id, user_id, conn=conn)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)})
    except LastOwnerError as exc:
        raise HTTPException(status_code=400, detail={"code": "last_owner", "message": str(exc)})
    return MessageResponse(message="Member removed.")
