"""
auth/context.py -- Builds the per-request RequestContext.

ContextBuilder.build() resolves, in order:
  1. actor         -- effective principal (impersonated user when one is
                      given and exists) plus the real caller, always kept.
  2. organization  -- explicit org_id if the actor is a member; otherwise
                      the actor's last active org if still a member;
                      otherwise any org the actor belongs to. An explicit
                      org_id the actor is not a member of resolves to None
                      without falling back, so the guard can reject it.
  3. project       -- only with a resolved org and a project_id; the project
                      must live in that org and the actor must be a member.
                      Anything else leaves project None, silently.
  4. permissions   -- union of the org-scope and project-scope action sets.
  5. limits/flags  -- per-org documents, {} when absent.

The "any org" pick (step 2, last fallback) has no ordering guarantee. Two
builds for a user with several orgs and no last-active org may differ.

The builder reads through the stores' own connections, not the request's
RLS-tagged session: it is part of the trust boundary RLS depends on.
It has no side effects. A storage error propagates; there is no partial
context.

RequestContext is a frozen value handed to handlers through Depends(); it is
never stored on the request or in module state.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping

from auth.permissions import PermissionEngine
from auth.store import UserStore
from tenancy.models import OrgRole, ProjectRole, Scope
from tenancy.store import TenancyStore

logger = logging.getLogger("goalmap.auth")

_EMPTY: Mapping = MappingProxyType({})


@dataclass(frozen=True)
class Actor:
    user_id: str
    real_user_id: str

    @property
    def impersonating(self) -> bool:
        return self.user_id != self.real_user_id


@dataclass(frozen=True)
class OrgContext:
    id: str
    role: OrgRole


@dataclass(frozen=True)
class ProjectContext:
    id: str
    role: ProjectRole
    organization_id: str


@dataclass(frozen=True)
class RequestContext:
    actor: Actor
    org: OrgContext | None = None
    project: ProjectContext | None = None
    permissions: frozenset[str] = frozenset()
    limits: Mapping = field(default_factory=lambda: _EMPTY)
    flags: Mapping = field(default_factory=lambda: _EMPTY)

    @property
    def user_id(self) -> str:
        return self.actor.user_id

    def can(self, action: str) -> bool:
        return action in self.permissions

    def to_dict(self) -> dict:
        return {
            "user_id": self.actor.user_id,
            "real_user_id": self.actor.real_user_id,
            "impersonating": self.actor.impersonating,
            "org": {"id": self.org.id, "role": self.org.role.value} if self.org else None,
            "project": {"id": self.project.id, "role": self.project.role.value} if self.project else None,
            "permissions": sorted(self.permissions),
            "limits": dict(self.limits),
            "flags": dict(self.flags),
        }


class ContextBuilder:
    def __init__(self, users: UserStore, tenancy: TenancyStore, engine: PermissionEngine) -> None:
        self.users = users
        self.tenancy = tenancy
        self.permissions = engine

    def build(
        self,
        user_id: str,
        org_id: str | None = None,
        project_id: str | None = None,
        impersonated_user_id: str | None = None,
    ) -> RequestContext:
        actor = self._resolve_actor(user_id, impersonated_user_id)
        org = self._resolve_org(actor.user_id, org_id)
        if org is None:
            return RequestContext(actor=actor)

        project = self._resolve_project(actor.user_id, org, project_id) if project_id else None
        return RequestContext(
            actor=actor,
            org=org,
            project=project,
            permissions=self._permissions(org, project),
            limits=MappingProxyType(self.tenancy.get_limits(org.id)),
            flags=MappingProxyType(self.tenancy.get_flags(org.id)),
        )

    def with_project(self, ctx: RequestContext, project_id: str) -> RequestContext:
        """Return ctx with the project resolved (or None) and permissions recomputed."""
        if ctx.org is None:
            return ctx
        project = self._resolve_project(ctx.actor.user_id, ctx.org, project_id)
        return replace(ctx, project=project, permissions=self._permissions(ctx.org, project))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _resolve_actor(self, user_id: str, impersonated_user_id: str | None) -> Actor:
        if impersonated_user_id and impersonated_user_id != user_id:
            if self.users.get_by_id(impersonated_user_id) is not None:
                logger.info("User %s acting as %s", user_id, impersonated_user_id)
                return Actor(user_id=impersonated_user_id, real_user_id=user_id)
        return Actor(user_id=user_id, real_user_id=user_id)

    def _resolve_org(self, user_id: str, org_id: str | None) -> OrgContext | None:
        if org_id:
            role = self.tenancy.get_org_role(user_id, org_id)
            return OrgContext(org_id, role) if role is not None else None

        user = self.users.get_by_id(user_id)
        last_active = user.last_active_org_id if user else None
        if last_active:
            role = self.tenancy.get_org_role(user_id, last_active)
            if role is not None:
                return OrgContext(last_active, role)

        any_org = self.tenancy.any_org_for_user(user_id)
        if any_org is None:
            return None
        role = self.tenancy.get_org_role(user_id, any_org)
        return OrgContext(any_org, role) if role is not None else None

    def _resolve_project(self, user_id: str, org: OrgContext, project_id: str) -> ProjectContext | None:
        project = self.tenancy.get_project(project_id)
        if project is None or project.organization_id != org.id:
            return None
        role = self.tenancy.get_project_role(user_id, project_id)
        if role is None:
            return None
        return ProjectContext(id=project_id, role=role, organization_id=project.organization_id)

    def _permissions(self, org: OrgContext, project: ProjectContext | None) -> frozenset[str]:
        actions = self.permissions.actions_for(Scope.ORGANIZATION, org.role)
        if project is not None:
            actions = actions | self.permissions.actions_for(Scope.PROJECT, project.role)
        return frozenset(actions)
