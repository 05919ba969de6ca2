"""
api/routes/v1/me.py -- The caller's own tenancy view.

Routes:
  GET  /api/v1/me/context      -- resolved RequestContext (org may be null)
  GET  /api/v1/me/orgs         -- organizations the caller belongs to
  GET  /api/v1/me/projects     -- caller's projects in the active org
  POST /api/v1/me/switch-org   -- remember an org (DB + active_org_id cookie)

/me/context is the onboarding entry point: a brand-new user with no
organization gets 200 with org=null instead of a 403, so the client can
prompt them to create one.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Connection

from api.models import ContextResponse, OrganizationResponse, ProjectResponse, SwitchOrgRequest
from auth.context import RequestContext
from auth.dependencies import get_effective_principal, get_request_context, require_org_context
from auth.models import User
from auth.rls import get_tenant_session, get_user_session
from auth.tokens import ORG_COOKIE, PROJECT_COOKIE, set_context_cookie

# Auth policy: every route requires auth. /me/projects additionally requires
# a resolved org; the others tolerate a caller with no organization.
router = APIRouter()


@router.get("/me/context", response_model=ContextResponse)
def my_context(ctx: RequestContext = Depends(get_request_context)) -> ContextResponse:
    return ContextResponse.from_context(ctx)


@router.get("/me/orgs", response_model=list[OrganizationResponse])
def my_orgs(
    request: Request,
    user: User = Depends(get_effective_principal),
    conn: Connection = Depends(get_user_session),
) -> list[OrganizationResponse]:
    tenancy = request.app.state.tenancy
    return [
        OrganizationResponse.from_org(org, role.value)
        for org, role in tenancy.list_organizations_for_user(user.user_id, conn=conn)
    ]


@router.get("/me/projects", response_model=list[ProjectResponse])
def my_projects(
    request: Request,
    ctx: RequestContext = Depends(require_org_context),
    conn: Connection = Depends(get_tenant_session),
) -> list[ProjectResponse]:
    """Projects in the active org that the caller is a member of."""
    tenancy = request.app.state.tenancy
    return [
        ProjectResponse.from_project(project, role.value)
        for project, role in tenancy.list_projects_in_org(ctx.org.id, ctx.user_id, conn=conn)
        if role is not None
    ]


@router.post("/me/switch-org", response_model=ContextResponse)
def switch_org(
    request: Request,
    body: SwitchOrgRequest,
    user: User = Depends(get_effective_principal),
    conn: Connection = Depends(get_user_session),
) -> JSONResponse:
    """Make body.org_id the caller's active org.

    Persists last_active_org_id (used when no hint is sent) and sets the
    active_org_id cookie. The project selection belongs to the previous org,
    so its cookie is cleared.
    """
    return switch_to_org(request, user, body.org_id, conn)


def switch_to_org(request: Request, user: User, org_id: str, conn: Connection) -> JSONResponse:
    tenancy = request.app.state.tenancy
    if not tenancy.can_switch_to_org(org_id, user.user_id, conn=conn):
        raise HTTPException(
            status_code=403,
            detail={
                "code": "org_context_required",
                "message": "Organization context required. Select an organization you belong to.",
            },
        )
    request.app.state.user_store.set_last_active_org(user.user_id, org_id, conn=conn)
    ctx = request.app.state.context_builder.build(user.user_id, org_id=org_id)
    resp = JSONResponse(content=ContextResponse.from_context(ctx).model_dump())
    set_context_cookie(resp, ORG_COOKIE, org_id)
    resp.delete_cookie(PROJECT_COOKIE)
    return resp
