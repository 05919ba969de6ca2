"""
api/routes/v1/admin.py -- Administrative endpoints (legacy global admin role).

Routes:
  GET  /api/v1/admin/permissions                       -- stored rules + loaded map
  POST /api/v1/admin/permissions                       -- insert a rule (not live until reload)
  POST /api/v1/admin/permissions/reload                -- rebuild the in-memory rule map
  GET  /api/v1/admin/organizations/{org_id}/limits     -- tenant limits document
  PUT  /api/v1/admin/organizations/{org_id}/limits
  GET  /api/v1/admin/organizations/{org_id}/flags      -- tenant feature flags document
  PUT  /api/v1/admin/organizations/{org_id}/flags

Limits and flags are read and written on the request's tagged session
(auth/rls.py), like every other tenant write.

Permission rule changes are two-step: POST a rule, then POST
/reload. Until the reload the engine keeps answering from the old map.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.engine import Connection

from api.models import PermissionRuleIn, PermissionRulesResponse, ReloadResponse, TenantDocument
from auth.dependencies import require_admin
from auth.models import User
from auth.rls import get_user_session
from tenancy.models import OrgRole, PermissionRule, ProjectRole, Scope
from tenancy.store import TenancyStore

logger = logging.getLogger("goalmap.api")

# Auth policy: every route requires the legacy admin role (require_admin).
router = APIRouter(prefix="/admin")

_ROLES = {
    Scope.ORGANIZATION: {r.value for r in OrgRole},
    Scope.PROJECT: {r.value for r in ProjectRole},
}


def _tenancy(request: Request) -> TenancyStore:
    return request.app.state.tenancy


def _require_org(request: Request, org_id: str, conn: Connection) -> None:
    if _tenancy(request).get_organization(org_id, conn=conn) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Organization not found."})


# ---------------------------------------------------------------------------
# Permission rules
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=PermissionRulesResponse)
def list_permissions(request: Request, admin: User = Depends(require_admin)) -> PermissionRulesResponse:
    rules = _tenancy(request).list_permission_rules()
    return PermissionRulesResponse(
        rules=[PermissionRuleIn(scope=r.scope.value, role=r.role, action=r.action) for r in rules],
        loaded=request.app.state.permission_engine.snapshot(),
    )


@router.post("/permissions", response_model=PermissionRuleIn, status_code=201)
def add_permission(
    request: Request,
    body: PermissionRuleIn,
    admin: User = Depends(require_admin),
) -> PermissionRuleIn:
    scope = Scope(body.scope)
    if body.role not in _ROLES[scope]:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_role", "message": f"Unknown {scope.value} role: {body.role}"},
        )
    created = _tenancy(request).add_permission_rule(PermissionRule(scope, body.role, body.action))
    if not created:
        raise HTTPException(status_code=409, detail={"code": "rule_exists", "message": "Rule already exists."})
    logger.info("Permission rule %s:%s -> %s added by %s", scope.value, body.role, body.action, admin.user_id)
    return body


@router.post("/permissions/reload", response_model=ReloadResponse)
def reload_permissions(request: Request, admin: User = Depends(require_admin)) -> ReloadResponse:
    count = request.app.state.permission_engine.reload()
    logger.info("Permission rules reloaded by %s", admin.user_id)
    return ReloadResponse(rules_loaded=count)


# ---------------------------------------------------------------------------
# Tenant limits and feature flags
# ---------------------------------------------------------------------------


@router.get("/organizations/{org_id}/limits", response_model=TenantDocument)
def get_limits(
    request: Request,
    org_id: str,
    admin: User = Depends(require_admin),
    conn: Connection = Depends(get_user_session),
) -> TenantDocument:
    _require_org(request, org_id, conn)
    return TenantDocument(values=_tenancy(request).get_limits(org_id, conn=conn))


@router.put("/organizations/{org_id}/limits", response_model=TenantDocument)
def set_limits(
    request: Request,
    org_id: str,
    body: TenantDocument,
    admin: User = Depends(require_admin),
    conn: Connection = Depends(get_user_session),
) -> TenantDocument:
    _require_org(request, org_id, conn)
    _tenancy(request).set_limits(org_id, body.values, conn=conn)
    return body


@router.get("/organizations/{org_id}/flags", response_model=TenantDocument)
def get_flags(
    request: Request,
    org_id: str,
    admin: User = Depends(require_admin),
    conn: Connection = Depends(get_user_session),
) -> TenantDocument:
    _require_org(request, org_id, conn)
    return TenantDocument(values=_tenancy(request).get_flags(org_id, conn=conn))


@router.put("/organizations/{org_id}/flags", response_model=TenantDocument)
def set_flags(
    request: Request,
    org_id: str,
    body: TenantDocument,
    admin: User = Depends(require_admin),
    conn: Connection = Depends(get_user_session),
) -> TenantDocument:
    _require_org(request, org_id, conn)
    _tenancy(request).set_flags(org_id, body.values, conn=conn)
    return body
