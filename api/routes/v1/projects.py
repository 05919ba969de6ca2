"""
api/routes/v1/projects.py -- Project and project-membership endpoints.

Routes (all require an active org):
  GET    /api/v1/org_projects                               -- projects.view
  POST   /api/v1/org_projects                               -- projects.create; caller becomes project_owner
  POST   /api/v1/org_projects/{project_id}/switch           -- make project active
  GET    /api/v1/org_projects/{project_id}                  -- content.view (project scope)
  PATCH  /api/v1/org_projects/{project_id}                  -- project_owner / project_admin role
  DELETE /api/v1/org_projects/{project_id}                  -- project.delete
  GET    /api/v1/org_projects/{project_id}/members          -- content.view
  POST   /api/v1/org_projects/{project_id}/members          -- project.members.manage
  PATCH  /api/v1/org_projects/{project_id}/members/{uid}    -- project.members.manage
  DELETE /api/v1/org_projects/{project_id}/members/{uid}    -- project.members.manage

Project routes resolve the project from x-project-id, then {project_id},
then the active_project_id cookie. A project outside the active org never
resolves, so an org A member cannot reach an org B project by id.

Invariant: a project never loses its last project_owner.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Connection

from api.models import (
    MemberResponse,
    MessageResponse,
    ProjectCreate,
    ProjectMemberAdd,
    ProjectMemberRoleUpdate,
    ProjectResponse,
    ProjectUpdate,
)
from auth.context import RequestContext
from auth.dependencies import require_org_context, require_permission, require_roles
from auth.rls import get_tenant_session
from auth.tokens import PROJECT_COOKIE, set_context_cookie
from tenancy.models import Project, ProjectRole, Scope
from tenancy.store import LastOwnerError, MembershipExistsError, NotFoundError, NotOrgMemberError, TenancyStore

router = APIRouter()

_NOT_FOUND = {"code": "project_context_required", "message": "Project not found or access denied."}


def _ensure_path_project(ctx: RequestContext, project_id: str) -> None:
    if ctx.project is None or ctx.project.id != project_id:
        raise HTTPException(status_code=403, detail=_NOT_FOUND)


def _tenancy(request: Request) -> TenancyStore:
    return request.app.state.tenancy


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@router.get("/org_projects", response_model=list[ProjectResponse])
def list_projects(
    request: Request,
    ctx: RequestContext = Depends(require_permission("projects.view")),
    conn: Connection = Depends(get_tenant_session),
) -> list[ProjectResponse]:
    """Every project in the active org, with the caller's role (null when not a member)."""
    return [
        ProjectResponse.from_project(p, role.value if role else None)
        for p, role in _tenancy(request).list_projects_in_org(ctx.org.id, ctx.user_id, conn=conn)
    ]


@router.post("/org_projects", response_model=ProjectResponse, status_code=201)
def create_project(
    request: Request,
    body: ProjectCreate,
    ctx: RequestContext = Depends(require_permission("projects.create")),
    conn: Connection = Depends(get_tenant_session),
) -> ProjectResponse:
    tenancy = _tenancy(request)
    project = Project(
        organization_id=ctx.org.id,
        name=body.name,
        description=body.description,
        created_by_user_id=ctx.user_id,
    )
    project.id = tenancy.create_project(project, conn=conn)
    return ProjectResponse.from_project(tenancy.get_project(project.id, conn=conn), ProjectRole.PROJECT_OWNER.value)


@router.post("/org_projects/{project_id}/switch", response_model=ProjectResponse)
def switch_project(
    request: Request,
    project_id: str,
    ctx: RequestContext = Depends(require_org_context),
    conn: Connection = Depends(get_tenant_session),
) -> JSONResponse:
    """Remember project_id in the active_project_id cookie."""
    tenancy = _tenancy(request)
    if not tenancy.can_switch_to_project(project_id, ctx.user_id, ctx.org.id, conn=conn):
        raise HTTPException(status_code=403, detail=_NOT_FOUND)
    role = tenancy.get_project_role(ctx.user_id, project_id, conn=conn)
    body = ProjectResponse.from_project(tenancy.get_project(project_id, conn=conn), role.value)
    resp = JSONResponse(content=body.model_dump())
    set_context_cookie(resp, PROJECT_COOKIE, project_id)
    return resp


@router.get("/org_projects/{project_id}", response_model=ProjectResponse)
def get_project(
    request: Request,
    project_id: str,
    ctx: RequestContext = Depends(require_permission("content.view", Scope.PROJECT)),
    conn: Connection = Depends(get_tenant_session),
) -> ProjectResponse:
    _ensure_path_project(ctx, project_id)
    project = _tenancy(request).get_project(project_id, conn=conn)
    if project is None:
        raise HTTPException(status_code=403, detail=_NOT_FOUND)
    return ProjectResponse.from_project(project, ctx.project.role.value)


@router.patch("/org_projects/{project_id}", response_model=ProjectResponse)
def update_project(
    request: Request,
    project_id: str,
    body: ProjectUpdate,
    ctx: RequestContext = Depends(require_roles(ProjectRole.PROJECT_OWNER, ProjectRole.PROJECT_ADMIN)),
    conn: Connection = Depends(get_tenant_session),
) -> ProjectResponse:
    _ensure_path_project(ctx, project_id)
    tenancy = _tenancy(request)
    tenancy.update_project(project_id, name=body.name, description=body.description, conn=conn)
    return ProjectResponse.from_project(tenancy.get_project(project_id, conn=conn), ctx.project.role.value)


@router.delete("/org_projects/{project_id}", response_model=MessageResponse)
def delete_project(
    request: Request,
    project_id: str,
    ctx: RequestContext = Depends(require_permission("project.delete", Scope.PROJECT)),
    conn: Connection = Depends(get_tenant_session),
) -> MessageResponse:
    _ensure_path_project(ctx, project_id)
    _tenancy(request).delete_project(project_id, conn=conn)
    return MessageResponse(message="Project deleted.")


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.get("/org_projects/{project_id}/members", response_model=list[MemberResponse])
def list_project_members(
    request: Request,
    project_id: str,
    ctx: RequestContext = Depends(require_permission("content.view", Scope.PROJECT)),
    conn: Connection = Depends(get_tenant_session),
) -> list[MemberResponse]:
    _ensure_path_project(ctx, project_id)
    return [MemberResponse.from_membership(m) for m in _tenancy(request).list_project_members(project_id, conn=conn)]


@router.post("/org_projects/{project_id}/members", response_model=MemberResponse, status_code=201)
def add_project_member(
    request: Request,
    project_id: str,
    body: ProjectMemberAdd,
    ctx: RequestContext = Depends(require_permission("project.members.manage", Scope.PROJECT)),
    conn: Connection = Depends(get_tenant_session),
) -> MemberResponse:
    """Add an org member (by email) to the project."""
    _ensure_path_project(ctx, project_id)
    target = request.app.state.user_store.get_by_email(str(body.email))
    if target is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    try:
        membership = _tenancy(request).add_project_member(
            project_id, ctx.org.id, target.user_id, ProjectRole(body.role.value), conn=conn
        )
    except NotOrgMemberError as exc:
        raise HTTPException(status_code=400, detail={"code": "not_org_member", "message": str(exc)})
    except MembershipExistsError as exc:
        raise HTTPException(status_code=409, detail={"code": "already_member", "message": str(exc)})
    membership.email = target.email
    membership.username = target.username
    return MemberResponse.from_membership(membership)


@router.patch("/org_projects/{project_id}/members/{user_id}", response_model=MemberResponse)
def update_project_member_role(
    request: Request,
    project_id: str,
    user_id: str,
    body: ProjectMemberRoleUpdate,
    ctx: RequestContext = Depends(require_permission("project.members.manage", Scope.PROJECT)),
    conn: Connection = Depends(get_tenant_session),
) -> MemberResponse:
    _ensure_path_project(ctx, project_id)
    try:
        membership = _tenancy(request).update_project_member_role(
            project_id, user_id, ProjectRole(body.role.value), conn=conn
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)})
    except LastOwnerError as exc:
        raise HTTPException(status_code=400, detail={"code": "last_owner", "message": str(exc)})
    return MemberResponse.from_membership(membership)


@router.delete("/org_projects/{project_id}/members/{user_id}", response_model=MessageResponse)
def remove_project_member(
    request: Request,
    project_id: str,
    user_id: str,
    ctx: RequestContext = Depends(require_permission("project.members.manage", Scope.PROJECT)),
    conn: Connection = Depends(get_tenant_session),
) -> MessageResponse:
    _ensure_path_project(ctx, project_id)
    try:
        _tenancy(request).remove_project_member(project_id, user_id, conn=conn)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)})
    except LastOwnerError as exc:
        raise HTTPException(status_code=400, detail={"code": "last_owner", "message": str(exc)})
    return MessageResponse(message="Member removed.")
