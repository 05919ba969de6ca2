"""
auth/permissions.py -- In-memory projection of the role -> action rules.

PermissionEngine is owned by the application (built in the lifespan, stored
on app.state) and injected wherever an authorization decision is made. It
is never a module-level singleton.

Backing structure: {"scope:role": frozenset(actions)}. reload() rebuilds the
whole mapping from storage and swaps the reference in one assignment, so a
concurrent reader sees either the old mapping or the new one, never a mix.

Staleness window:
  Rules are read once at startup. A rule added or removed afterwards is
  invisible until reload() runs again (POST /api/v1/admin/permissions/reload).
  Rule changes are rare administrative operations; there is no automatic
  invalidation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading

from tenancy.models import OrgRole, PermissionRule, ProjectRole, Scope
from tenancy.store import TenancyStore

logger = logging.getLogger("goalmap.auth")

__all__ = ["OrgRole", "PermissionDenied", "PermissionEngine", "ProjectRole", "Scope"]


class PermissionDenied(Exception):
    """Authorization check failed. Carries the denied action for audit."""

    def __init__(self, action: str, message: str | None = None) -> None:
        self.action = action
        super().__init__(message or f"Permission denied: {action}")


def _key(scope: Scope, role: OrgRole | ProjectRole | str) -> str:
    role_value = role.value if isinstance(role, (OrgRole, ProjectRole)) else role
    return f"{scope.value}:{role_value}"


_ROLE_ENUM = {Scope.ORGANIZATION: OrgRole, Scope.PROJECT: ProjectRole}


class PermissionEngine:
    """Answers has_permission(scope, role, action) from an in-memory rule map."""

    def __init__(self, store: TenancyStore) -> None:
        self._store = store
        self._rules: dict[str, frozenset[str]] = {}
        self._reload_lock = threading.Lock()

    def reload(self) -> int:
        """Rebuild the rule map from storage and swap it in. Returns the rule count.

        A storage error propagates and leaves the previous map in place.
        """
        with self._reload_lock:
            grouped: dict[str, set[str]] = {}
            count = 0
            for rule in self._store.list_permission_rules():
                if not self._known_role(rule):
                    logger.warning("Skipping permission rule with unknown role %s:%s", rule.scope.value, rule.role)
                    continue
                grouped.setdefault(_key(rule.scope, rule.role), set()).add(rule.action)
                count += 1
            self._rules = {k: frozenset(v) for k, v in grouped.items()}
        logger.info("Permission rules loaded: %d rules across %d roles", count, len(self._rules))
        return count

    @staticmethod
    def _known_role(rule: PermissionRule) -> bool:
        try:
            _ROLE_ENUM[rule.scope](rule.role)
        except ValueError:
            return False
        return True

    def has_permission(self, scope: Scope, role: OrgRole | ProjectRole | None, action: str) -> bool:
        if role is None:
            return False
        return action in self._rules.get(_key(scope, role), frozenset())

    def actions_for(self, scope: Scope, role: OrgRole | ProjectRole | None) -> frozenset[str]:
        if role is None:
            return frozenset()
        return self._rules.get(_key(scope, role), frozenset())

    def snapshot(self) -> dict[str, list[str]]:
        """Current in-memory map, sorted for display."""
        rules = self._rules
        return {k: sorted(v) for k, v in sorted(rules.items())}

    # ------------------------------------------------------------------
    # Storage-backed checks
    # ------------------------------------------------------------------

    def check_organization_permission(self, user_id: str, org_id: str, action: str) -> OrgRole:
        """Look up the user's org role and raise PermissionDenied unless it grants action."""
        role = self._store.get_org_role(user_id, org_id)
        if role is None:
            raise PermissionDenied(action, "Not a member of this organization")
        if not self.has_permission(Scope.ORGANIZATION, role, action):
            logger.info("Denied %s on org %s for user %s (role %s)", action, org_id, user_id, role.value)
            raise PermissionDenied(action)
        return role

    def check_project_permission(self, user_id: str, project_id: str, action: str) -> ProjectRole:
        """Look up the user's project role and raise PermissionDenied unless it grants action."""
        role = self._store.get_project_role(user_id, project_id)
        if role is None:
            raise PermissionDenied(action, "Not a member of this project")
        if not self.has_permission(Scope.PROJECT, role, action):
            logger.info("Denied %s on project %s for user %s (role %s)", action, project_id, user_id, role.value)
            raise PermissionDenied(action)
        return role
