"""
tenancy/store.py -- SQLAlchemy Core persistence layer for tenancy entities.

Pattern: Repository + Data Mapper (same as auth/store.py).
TenancyStore is the repository; the _row_to_* functions are the mappers.
Route and guard code never touches SQL directly.

Connections:
  Every method accepts an optional `conn`. When a route passes the
  request's RLS-tagged connection (see auth/rls.py) the statement runs
  inside that transaction and is committed or rolled back with the request.
  Without `conn` the store opens its own short transaction on the engine --
  the privileged path used by the context builder and the guards, which sit
  on the trust boundary that RLS itself depends on.

Invariants enforced here:
  - Every organization keeps at least one `owner` membership.
  - Every project keeps at least one `project_owner` membership.
  Both are checked inside the same transaction as the write, with the owner
  rows locked (FOR UPDATE) on dialects that support it, so two concurrent
  demotions cannot both pass the check.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from core.database import (
    new_id,
    now_iso,
    org_feature_flags,
    org_limits,
    organization_members,
    organizations,
    permissions,
    project_members,
    projects,
    users,
)
from tenancy.models import (
    Membership,
    Organization,
    OrgRole,
    PermissionRule,
    Project,
    ProjectMembership,
    ProjectRole,
    Scope,
)

logger = logging.getLogger("goalmap.tenancy")


# ---------------------------------------------------------------------------
# Domain errors -- routes translate these into HTTP responses
# ---------------------------------------------------------------------------


class NotFoundError(LookupError):
    """The organization, project or membership does not exist."""


class MembershipExistsError(ValueError):
    """The user already holds a membership in this organization or project."""


class NotOrgMemberError(ValueError):
    """A project membership was requested for a user outside the organization."""


class LastOwnerError(ValueError):
    """The change would leave an organization or project without an owner."""


# ---------------------------------------------------------------------------
# Default permission rules -- seeded into an empty org_permissions table
# ---------------------------------------------------------------------------

_ORG_ACTIONS: dict[OrgRole, tuple[str, ...]] = {
    OrgRole.OWNER: (
        "org.update",
        "org.delete",
        "members.view",
        "members.invite",
        "members.update_role",
        "members.remove",
        "projects.create",
        "projects.view",
    ),
    OrgRole.ADMIN: ("members.view", "members.invite", "projects.create", "projects.view"),
    OrgRole.MEMBER: ("members.view", "projects.view"),
}

_PROJECT_ACTIONS: dict[ProjectRole, tuple[str, ...]] = {
    ProjectRole.PROJECT_OWNER: ("content.view", "content.edit", "project.members.manage", "project.delete"),
    ProjectRole.PROJECT_ADMIN: ("content.view", "content.edit", "project.members.manage"),
    ProjectRole.PROJECT_MEMBER: ("content.view", "content.edit"),
    ProjectRole.VIEWER: ("content.view",),
}

DEFAULT_PERMISSION_RULES: list[PermissionRule] = [
    PermissionRule(Scope.ORGANIZATION, role.value, action)
    for role, actions in _ORG_ACTIONS.items()
    for action in actions
] + [PermissionRule(Scope.PROJECT, role.value, action) for role, actions in _PROJECT_ACTIONS.items() for action in actions]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TenancyStore:
    """Repository for organizations, projects, memberships, rules, limits and flags.

    Usage:
        store = TenancyStore(engine)
        org_id = store.create_organization(Organization(name="Acme", created_by_user_id=uid))
        store.add_member(org_id, other_uid, OrgRole.MEMBER)
        store.get_org_role(other_uid, org_id)   # OrgRole.MEMBER
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def _begin(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Yield the caller's connection, or a fresh transaction committed on exit."""
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization, conn: Connection | None = None) -> str:
        """Insert an organization and its creator's owner membership atomically."""
        org_id = org.id or new_id()
        created_at = now_iso()
        with self._begin(conn) as c:
            c.execute(
                insert(organizations).values(
                    id=org_id,
                    name=org.name,
                    color=org.color,
                    created_by_user_id=org.created_by_user_id,
                    created_at=created_at,
                )
            )
            c.execute(
                insert(organization_members).values(
                    organization_id=org_id,
                    user_id=org.created_by_user_id,
                    role=OrgRole.OWNER.value,
                    created_at=created_at,
                )
            )
        logger.info("Organization %s created by %s", org_id, org.created_by_user_id)
        return org_id

    def get_organization(self, org_id: str, conn: Connection | None = None) -> Organization | None:
        with self._begin(conn) as c:
            row = c.execute(select(organizations).where(organizations.c.id == org_id)).fetchone()
        return _row_to_org(row) if row is not None else None

    def list_organizations_for_user(
        self, user_id: str, conn: Connection | None = None
    ) -> list[tuple[Organization, OrgRole]]:
        """Return (organization, role) for every organization the user belongs to."""
        stmt = (
            select(organizations, organization_members.c.role.label("member_role"))
            .join(organization_members, organization_members.c.organization_id == organizations.c.id)
            .where(organization_members.c.user_id == user_id)
            .order_by(organizations.c.name)
        )
        with self._begin(conn) as c:
            rows = c.execute(stmt).fetchall()
        return [(_row_to_org(r), OrgRole(r.member_role)) for r in rows]

    def update_organization(
        self,
        org_id: str,
        name: str | None = None,
        color: str | None = None,
        conn: Connection | None = None,
    ) -> bool:
        """Update mutable organization fields. Returns False if org_id was not found."""
        values: dict = {}
        if name is not None:
            values["name"] = name
        if color is not None:
            values["color"] = color
        if not values:
            return self.get_organization(org_id, conn=conn) is not None
        with self._begin(conn) as c:
            result = c.execute(update(organizations).where(organizations.c.id == org_id).values(**values))
        return result.rowcount > 0

    def delete_organization(self, org_id: str, conn: Connection | None = None) -> bool:
        """Delete an organization with its memberships, projects, limits and flags."""
        with self._begin(conn) as c:
            project_ids = select(projects.c.id).where(projects.c.organization_id == org_id)
            c.execute(delete(project_members).where(project_members.c.project_id.in_(project_ids)))
            c.execute(delete(projects).where(projects.c.organization_id == org_id))
            c.execute(delete(organization_members).where(organization_members.c.organization_id == org_id))
            c.execute(delete(org_limits).where(org_limits.c.org_id == org_id))
            c.execute(delete(org_feature_flags).where(org_feature_flags.c.org_id == org_id))
            result = c.execute(delete(organizations).where(organizations.c.id == org_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Organization memberships
    # ------------------------------------------------------------------

    def get_org_role(self, user_id: str, org_id: str, conn: Connection | None = None) -> OrgRole | None:
        """Return the user's role in org_id, or None if not a member."""
        stmt = select(organization_members.c.role).where(
            and_(
                organization_members.c.organization_id == org_id,
                organization_members.c.user_id == user_id,
            )
        )
        with self._begin(conn) as c:
            role = c.execute(stmt).scalar()
        return OrgRole(role) if role is not None else None

    def any_org_for_user(self, user_id: str, conn: Connection | None = None) -> str | None:
        """Return some organization the user belongs to.

        No ORDER BY: which membership wins is deliberately unspecified and may
        differ between calls or databases.
        """
        stmt = (
            select(organization_members.c.organization_id)
            .where(organization_members.c.user_id == user_id)
            .limit(1)
        )
        with self._begin(conn) as c:
            return c.execute(stmt).scalar()

    def can_switch_to_org(self, org_id: str, user_id: str, conn: Connection | None = None) -> bool:
        return self.get_org_role(user_id, org_id, conn=conn) is not None

    def list_members(self, org_id: str, conn: Connection | None = None) -> list[Membership]:
        stmt = (
            select(organization_members, users.c.email, users.c.username)
            .join(users, users.c.user_id == organization_members.c.user_id, isouter=True)
            .where(organization_members.c.organization_id == org_id)
            .order_by(organization_members.c.created_at)
        )
        with self._begin(conn) as c:
            rows = c.execute(stmt).fetchall()
        return [_row_to_membership(r) for r in rows]

    def add_member(self, org_id: str, user_id: str, role: OrgRole, conn: Connection | None = None) -> Membership:
        """Add user_id to org_id. Raises MembershipExistsError on duplicates."""
        with self._begin(conn) as c:
            if self.get_org_role(user_id, org_id, conn=c) is not None:
                raise MembershipExistsError("User is already a member of this organization.")
            created_at = now_iso()
            c.execute(
                insert(organization_members).values(
                    organization_id=org_id,
                    user_id=user_id,
                    role=role.value,
                    created_at=created_at,
                )
            )
        return Membership(organization_id=org_id, user_id=user_id, role=role, created_at=created_at)

    def update_member_role(
        self, org_id: str, user_id: str, role: OrgRole, conn: Connection | None = None
    ) -> Membership:
        """Change a member's role, refusing to demote the last owner."""
        with self._begin(conn) as c:
            current = self.get_org_role(user_id, org_id, conn=c)
            if current is None:
                raise NotFoundError("Member not found.")
            if current is OrgRole.OWNER and role is not OrgRole.OWNER:
                if self._count_org_owners(c, org_id) <= 1:
                    raise LastOwnerError("Cannot change the role of the last owner. Transfer ownership first.")
            c.execute(
                update(organization_members)
                .where(
                    and_(
                        organization_members.c.organization_id == org_id,
                        organization_members.c.user_id == user_id,
                    )
                )
                .values(role=role.value)
            )
        return Membership(organization_id=org_id, user_id=user_id, role=role)

    def remove_member(self, org_id: str, user_id: str, conn: Connection | None = None) -> None:
        """Remove a member, refusing to remove the last owner."""
        with self._begin(conn) as c:
            current = self.get_org_role(user_id, org_id, conn=c)
            if current is None:
                raise NotFoundError("Member not found.")
            if current is OrgRole.OWNER and self._count_org_owners(c, org_id) <= 1:
                raise LastOwnerError("Cannot remove the last owner. Transfer ownership first.")
            c.execute(
                delete(organization_members).where(
                    and_(
                        organization_members.c.organization_id == org_id,
                        organization_members.c.user_id == user_id,
                    )
                )
            )

    def count_owners(self, org_id: str, conn: Connection | None = None) -> int:
        with self._begin(conn) as c:
            return self._count_org_owners(c, org_id)

    def _count_org_owners(self, c: Connection, org_id: str) -> int:
        stmt = (
            select(organization_members.c.user_id)
            .where(
                and_(
                    organization_members.c.organization_id == org_id,
                    organization_members.c.role == OrgRole.OWNER.value,
                )
            )
            .with_for_update()
        )
        return len(c.execute(stmt).fetchall())

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, project: Project, conn: Connection | None = None) -> str:
        """Insert a project and make its creator the sole project_owner."""
        project_id = project.id or new_id()
        created_at = now_iso()
        with self._begin(conn) as c:
            c.execute(
                insert(projects).values(
                    id=project_id,
                    organization_id=project.organization_id,
                    name=project.name,
                    description=project.description,
                    created_by_user_id=project.created_by_user_id,
                    created_at=created_at,
                )
            )
            c.execute(
                insert(project_members).values(
                    project_id=project_id,
                    user_id=project.created_by_user_id,
                    role=ProjectRole.PROJECT_OWNER.value,
                    created_at=created_at,
                )
            )
        logger.info("Project %s created in org %s", project_id, project.organization_id)
        return project_id

    def get_project(self, project_id: str, conn: Connection | None = None) -> Project | None:
        with self._begin(conn) as c:
            row = c.execute(select(projects).where(projects.c.id == project_id)).fetchone()
        return _row_to_project(row) if row is not None else None

    def list_projects_in_org(
        self, org_id: str, user_id: str, conn: Connection | None = None
    ) -> list[tuple[Project, ProjectRole | None]]:
        """Return every project in org_id with the user's role (None when not a member)."""
        membership = select(project_members).where(project_members.c.user_id == user_id).subquery()
        stmt = (
            select(projects, membership.c.role.label("member_role"))
            .join(membership, membership.c.project_id == projects.c.id, isouter=True)
            .where(projects.c.organization_id == org_id)
            .order_by(projects.c.name)
        )
        with self._begin(conn) as c:
            rows = c.execute(stmt).fetchall()
        return [(_row_to_project(r), ProjectRole(r.member_role) if r.member_role else None) for r in rows]

    def update_project(
        self,
        project_id: str,
        name: str | None = None,
        description: str | None = None,
        conn: Connection | None = None,
    ) -> bool:
        values: dict = {}
        if name is not None:
            values["name"] = name
        if description is not None:
            values["description"] = description
        if not values:
            return self.get_project(project_id, conn=conn) is not None
        with self._begin(conn) as c:
            result = c.execute(update(projects).where(projects.c.id == project_id).values(**values))
        return result.rowcount > 0

    def delete_project(self, project_id: str, conn: Connection | None = None) -> bool:
        with self._begin(conn) as c:
            c.execute(delete(project_members).where(project_members.c.project_id == project_id))
            result = c.execute(delete(projects).where(projects.c.id == project_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Project memberships
    # ------------------------------------------------------------------

    def get_project_role(self, user_id: str, project_id: str, conn: Connection | None = None) -> ProjectRole | None:
        stmt = select(project_members.c.role).where(
            and_(project_members.c.project_id == project_id, project_members.c.user_id == user_id)
        )
        with self._begin(conn) as c:
            role = c.execute(stmt).scalar()
        return ProjectRole(role) if role is not None else None

    def can_switch_to_project(
        self, project_id: str, user_id: str, org_id: str, conn: Connection | None = None
    ) -> bool:
        """True when the project lives in org_id and the user is one of its members."""
        project = self.get_project(project_id, conn=conn)
        if project is None or project.organization_id != org_id:
            return False
        return self.get_project_role(user_id, project_id, conn=conn) is not None

    def list_project_members(self, project_id: str, conn: Connection | None = None) -> list[ProjectMembership]:
        stmt = (
            select(project_members, users.c.email, users.c.username)
            .join(users, users.c.user_id == project_members.c.user_id, isouter=True)
            .where(project_members.c.project_id == project_id)
            .order_by(project_members.c.created_at)
        )
        with self._begin(conn) as c:
            rows = c.execute(stmt).fetchall()
        return [_row_to_project_membership(r) for r in rows]

    def add_project_member(
        self,
        project_id: str,
        org_id: str,
        user_id: str,
        role: ProjectRole,
        conn: Connection | None = None,
    ) -> ProjectMembership:
        """Add user_id to project_id. The user must already belong to org_id."""
        with self._begin(conn) as c:
            if self.get_org_role(user_id, org_id, conn=c) is None:
                raise NotOrgMemberError("User must be a member of the organization first.")
            if self.get_project_role(user_id, project_id, conn=c) is not None:
                raise MembershipExistsError("User is already a member of this project.")
            created_at = now_iso()
            c.execute(
                insert(project_members).values(
                    project_id=project_id,
                    user_id=user_id,
                    role=role.value,
                    created_at=created_at,
                )
            )
        return ProjectMembership(project_id=project_id, user_id=user_id, role=role, created_at=created_at)

    def update_project_member_role(
        self, project_id: str, user_id: str, role: ProjectRole, conn: Connection | None = None
    ) -> ProjectMembership:
        """Change a project member's role, refusing to demote the last project_owner."""
        with self._begin(conn) as c:
            current = self.get_project_role(user_id, project_id, conn=c)
            if current is None:
                raise NotFoundError("Member not found.")
            if current is ProjectRole.PROJECT_OWNER and role is not ProjectRole.PROJECT_OWNER:
                if self._count_project_owners(c, project_id) <= 1:
                    raise LastOwnerError(
                        "Cannot change the role of the last project owner. Transfer ownership first."
                    )
            c.execute(
                update(project_members)
                .where(and_(project_members.c.project_id == project_id, project_members.c.user_id == user_id))
                .values(role=role.value)
            )
        return ProjectMembership(project_id=project_id, user_id=user_id, role=role)

    def remove_project_member(self, project_id: str, user_id: str, conn: Connection | None = None) -> None:
        """Remove a project member, refusing to remove the last project_owner."""
        with self._begin(conn) as c:
            current = self.get_project_role(user_id, project_id, conn=c)
            if current is None:
                raise NotFoundError("Member not found.")
            if current is ProjectRole.PROJECT_OWNER and self._count_project_owners(c, project_id) <= 1:
                raise LastOwnerError("Cannot remove the last project owner. Transfer ownership first.")
            c.execute(
                delete(project_members).where(
                    and_(project_members.c.project_id == project_id, project_members.c.user_id == user_id)
                )
            )

    def count_project_owners(self, project_id: str, conn: Connection | None = None) -> int:
        with self._begin(conn) as c:
            return self._count_project_owners(c, project_id)

    def _count_project_owners(self, c: Connection, project_id: str) -> int:
        stmt = (
            select(project_members.c.user_id)
            .where(
                and_(
                    project_members.c.project_id == project_id,
                    project_members.c.role == ProjectRole.PROJECT_OWNER.value,
                )
            )
            .with_for_update()
        )
        return len(c.execute(stmt).fetchall())

    # ------------------------------------------------------------------
    # Permission rules
    # ------------------------------------------------------------------

    def list_permission_rules(self) -> list[PermissionRule]:
        """Return every rule. Rows with an unknown scope are skipped with a warning."""
        with self.engine.connect() as c:
            rows = c.execute(
                select(permissions.c.entity_type, permissions.c.role, permissions.c.action).order_by(permissions.c.id)
            ).fetchall()
        rules: list[PermissionRule] = []
        for row in rows:
            try:
                scope = Scope(row.entity_type)
            except ValueError:
                logger.warning("Skipping permission rule with unknown scope %r", row.entity_type)
                continue
            rules.append(PermissionRule(scope=scope, role=row.role, action=row.action))
        return rules

    def add_permission_rule(self, rule: PermissionRule) -> bool:
        """Insert a rule. Returns False when an identical rule already exists."""
        with self.engine.begin() as c:
            exists = c.execute(
                select(func.count())
                .select_from(permissions)
                .where(
                    and_(
                        permissions.c.entity_type == rule.scope.value,
                        permissions.c.role == rule.role,
                        permissions.c.action == rule.action,
                    )
                )
            ).scalar()
            if exists:
                return False
            c.execute(insert(permissions).values(entity_type=rule.scope.value, role=rule.role, action=rule.action))
        return True

    def seed_default_permissions(self) -> int:
        """Insert DEFAULT_PERMISSION_RULES when the rules table is empty.

        Returns the number of rules inserted (0 when rules already exist).
        Idempotent -- safe to call on every startup.
        """
        with self.engine.begin() as c:
            count = c.execute(select(func.count()).select_from(permissions)).scalar() or 0
            if count:
                return 0
            c.execute(
                insert(permissions),
                [{"entity_type": r.scope.value, "role": r.role, "action": r.action} for r in DEFAULT_PERMISSION_RULES],
            )
        logger.info("Seeded %d default permission rules", len(DEFAULT_PERMISSION_RULES))
        return len(DEFAULT_PERMISSION_RULES)

    # ------------------------------------------------------------------
    # Tenant limits and feature flags
    # ------------------------------------------------------------------

    def get_limits(self, org_id: str, conn: Connection | None = None) -> dict:
        """Return the org's limits document, or {} when none is stored."""
        with self._begin(conn) as c:
            raw = c.execute(select(org_limits.c.limits).where(org_limits.c.org_id == org_id)).scalar()
        return _load_doc(raw)

    def set_limits(self, org_id: str, limits: dict, conn: Connection | None = None) -> None:
        with self._begin(conn) as c:
            c.execute(delete(org_limits).where(org_limits.c.org_id == org_id))
            c.execute(insert(org_limits).values(org_id=org_id, limits=json.dumps(limits)))

    def get_flags(self, org_id: str, conn: Connection | None = None) -> dict:
        """Return the org's feature flags document, or {} when none is stored."""
        with self._begin(conn) as c:
            raw = c.execute(select(org_feature_flags.c.flags).where(org_feature_flags.c.org_id == org_id)).scalar()
        return _load_doc(raw)

    def set_flags(self, org_id: str, flags: dict, conn: Connection | None = None) -> None:
        with self._begin(conn) as c:
            c.execute(delete(org_feature_flags).where(org_feature_flags.c.org_id == org_id))
            c.execute(insert(org_feature_flags).values(org_id=org_id, flags=json.dumps(flags)))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _load_doc(raw: str | None) -> dict:
    if not raw:
        return {}
    doc = json.loads(raw)
    return doc if isinstance(doc, dict) else {}


def _row_to_org(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        color=row.color,
        created_by_user_id=row.created_by_user_id,
        created_at=row.created_at,
    )


def _row_to_membership(row) -> Membership:
    return Membership(
        organization_id=row.organization_id,
        user_id=row.user_id,
        role=OrgRole(row.role),
        created_at=row.created_at,
        email=row.email,
        username=row.username,
    )


def _row_to_project(row) -> Project:
    return Project(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        description=row.description,
        created_by_user_id=row.created_by_user_id,
        created_at=row.created_at,
    )


def _row_to_project_membership(row) -> ProjectMembership:
    return ProjectMembership(
        project_id=row.project_id,
        user_id=row.user_id,
        role=ProjectRole(row.role),
        created_at=row.created_at,
        email=row.email,
        username=row.username,
    )
