"""
auth/dependencies.py -- FastAPI Depends() helpers forming the guard chain.

Each stage depends on the previous one, so FastAPI resolves them in a fixed
order and a failing stage stops the chain before later stages run:

  get_current_principal      authenticate (Hybrid verifier) + resolve principal
    -> get_effective_principal   impersonation applied; principal-only routes
    -> require_org_context   resolve the active org; 403 when unresolved
      -> require_project_context   resolve the active project; 403 when unresolved
        -> require_permission(action, Scope.PROJECT)
    -> require_permission(action)          (organization scope)
    -> require_roles(*roles)               coarse role-literal variant

get_request_context is the tolerant org stage for onboarding routes: it
returns a context whose org may be None and must not be chained further.

Authorization is opt-in: a route without require_permission / require_roles
is reachable by any authenticated principal. Every tenant route in api/
declares one explicitly.

Carriers (header beats route param beats cookie):
  token    Authorization: Bearer  > access_token cookie
  org      x-org-id               > {org_id} route param > active_org_id cookie
  project  x-project-id           > {project_id} route param > active_project_id cookie

Error messages for unresolved context are identical whether the id does not
exist or the caller is not a member, so ids cannot be probed.

Layer rule: api/ imports from auth/, not the other way around. This module
may import fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.context import ContextBuilder, RequestContext
from auth.models import User
from auth.permissions import PermissionDenied, PermissionEngine
from auth.tokens import ORG_COOKIE, PROJECT_COOKIE, extract_token
from tenancy.models import Scope

logger = logging.getLogger("goalmap.auth")

IMPERSONATE_HEADER = "x-impersonate-user-id"
ORG_HEADER = "x-org-id"
PROJECT_HEADER = "x-project-id"


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"code": "unauthorized", "message": message})


def _valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def get_context_builder(request: Request) -> ContextBuilder:
    return request.app.state.context_builder


def get_permission_engine(request: Request) -> PermissionEngine:
    return request.app.state.permission_engine


# ---------------------------------------------------------------------------
# Stage 1: authenticate
# ---------------------------------------------------------------------------


def get_current_principal(request: Request) -> User:
    """Authenticate the request and return the internal principal.

    Remote tokens go through UserStore.ensure_principal() (provision on first
    sight). Local tokens carry the internal id directly; an id with no user
    behind it is an invalid token.
    """
    token = extract_token(request)
    if not token:
        raise _unauthorized("Authorization required.")

    result = request.app.state.verifier.verify(token)
    if not result.ok:
        logger.info("Token rejected: %s", result.reason)
        raise _unauthorized("Invalid token.")

    identity = result.identity
    user_store = request.app.state.user_store
    if identity.scheme == "remote":
        user_id = user_store.ensure_principal(identity.subject, identity.email)
    else:
        user_id = identity.subject

    user = user_store.get_by_id(user_id)
    if user is None:
        raise _unauthorized("Invalid token.")
    return user


def require_admin(user: User = Depends(get_current_principal)) -> User:
    """Require the legacy global admin role. 403 otherwise."""
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


def _impersonation_target(request: Request, user: User) -> str | None:
    target = request.headers.get(IMPERSONATE_HEADER)
    if not target:
        return None
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Impersonation requires admin access."},
        )
    if not _valid_uuid(target):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_user_id", "message": "Invalid impersonation user id."},
        )
    return target


def get_effective_principal(request: Request, user: User = Depends(get_current_principal)) -> User:
    """The principal a non-admin route acts as.

    An admin sending x-impersonate-user-id acts as that user, matching the
    actor the context builder resolves. An unknown target leaves the admin
    acting as themselves. Admin routes keep depending on the real caller.
    """
    target = _impersonation_target(request, user)
    if target is None or target == user.user_id:
        return user
    impersonated = request.app.state.user_store.get_by_id(target)
    if impersonated is None:
        return user
    logger.info("User %s acting as %s", user.user_id, target)
    return impersonated


# ---------------------------------------------------------------------------
# Stage 2: organization context
# ---------------------------------------------------------------------------


def _org_hint(request: Request) -> str | None:
    hint = (
        request.headers.get(ORG_HEADER)
        or request.path_params.get("org_id")
        or request.cookies.get(ORG_COOKIE)
    )
    if hint and not _valid_uuid(hint):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_org_id", "message": "Invalid organization id format."},
        )
    return hint or None


def get_request_context(request: Request, user: User = Depends(get_current_principal)) -> RequestContext:
    """Build the context without requiring an org. ctx.org may be None."""
    org_hint = _org_hint(request)
    target = _impersonation_target(request, user)
    return get_context_builder(request).build(
        user.user_id,
        org_id=org_hint,
        impersonated_user_id=target,
    )


def require_org_context(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    """Require a resolved organization. 403 when it cannot be resolved."""
    if ctx.org is None:
        logger.info("Org context unresolved for user %s", ctx.actor.user_id)
        raise HTTPException(
            status_code=403,
            detail={
                "code": "org_context_required",
                "message": "Organization context required. Select an organization you belong to.",
            },
        )
    return ctx


# ---------------------------------------------------------------------------
# Stage 3: project context
# ---------------------------------------------------------------------------


def _project_hint(request: Request) -> str | None:
    hint = (
        request.headers.get(PROJECT_HEADER)
        or request.path_params.get("project_id")
        or request.cookies.get(PROJECT_COOKIE)
    )
    if hint and not _valid_uuid(hint):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_project_id", "message": "Invalid project id format."},
        )
    return hint or None


def require_project_context(
    request: Request, ctx: RequestContext = Depends(require_org_context)
) -> RequestContext:
    """Require a project in the active org that the actor is a member of."""
    hint = _project_hint(request)
    if hint is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "project_context_required", "message": "Project context required."},
        )
    ctx = get_context_builder(request).with_project(ctx, hint)
    if ctx.project is None:
        raise HTTPException(
            status_code=403,
            detail={"code": "project_context_required", "message": "Project not found or access denied."},
        )
    return ctx


# ---------------------------------------------------------------------------
# Stage 4: authorize
# ---------------------------------------------------------------------------


def require_permission(action: str, scope: Scope = Scope.ORGANIZATION) -> Callable[..., RequestContext]:
    """Dependency factory: require `action` at `scope` for the active role.

    Usage:
        @router.post("", dependencies=[Depends(require_permission("projects.create"))])
        @router.delete("/{project_id}")
        def route(ctx: RequestContext = Depends(require_permission("project.delete", Scope.PROJECT))): ...
    """
    if scope is Scope.PROJECT:

        def _project_guard(request: Request, ctx: RequestContext = Depends(require_project_context)) -> RequestContext:
            _authorize(get_permission_engine(request), scope, ctx.project.role, action, ctx)
            return ctx

        return _project_guard

    def _org_guard(request: Request, ctx: RequestContext = Depends(require_org_context)) -> RequestContext:
        _authorize(get_permission_engine(request), scope, ctx.org.role, action, ctx)
        return ctx

    return _org_guard


def _authorize(engine: PermissionEngine, scope: Scope, role, action: str, ctx: RequestContext) -> None:
    if not engine.has_permission(scope, role, action):
        logger.info(
            "Denied %s (%s scope) for user %s with role %s",
            action,
            scope.value,
            ctx.actor.user_id,
            role.value,
        )
        raise PermissionDenied(action)


def require_roles(*roles: str) -> Callable[..., RequestContext]:
    """Dependency factory: coarse gate on the project role, falling back to the org role.

    The project is resolved from the usual hints when one is present; a
    project the actor cannot see simply falls back to the org role.
    """
    allowed = frozenset(str(r.value) if hasattr(r, "value") else str(r) for r in roles)

    def _roles_guard(request: Request, ctx: RequestContext = Depends(require_org_context)) -> RequestContext:
        hint = _project_hint(request)
        if hint is not None and ctx.project is None:
            ctx = get_context_builder(request).with_project(ctx, hint)
        role = ctx.project.role if ctx.project is not None else ctx.org.role
        if role.value not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "insufficient_role", "message": "Insufficient role."},
            )
        return ctx

    return _roles_guard
