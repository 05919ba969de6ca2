"""
core/database.py -- Engine factory and relational schema for Goalmap.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py and
tenancy/models.py remain the authoritative domain representation. Swapping
SQLite for PostgreSQL is a connection string change: row-level security
policies only exist on PostgreSQL, everything else is dialect-neutral.

One MetaData owns every table so UserStore and TenancyStore can share a
single engine (and a single request-scoped connection, see auth/rls.py).

Security: all queries elsewhere use bound parameters. No f-strings in SQL.

Layer rule: core/ is the kernel. No imports from api/, auth/, or tenancy/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("user_id", String(36), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("username", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),  # legacy coarse role
    Column("hashed_password", Text),  # NULL for remote-scheme-only users
    Column("remote_subject", String(255), unique=True),  # NULL until first remote login
    Column("last_active_org_id", String(36)),
    Column("created_at", String(32), nullable=False),
)

organizations = Table(
    "org_organizations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("color", String(16)),
    Column("created_by_user_id", String(36), nullable=False),
    Column("created_at", String(32), nullable=False),
)

organization_members = Table(
    "org_organization_members",
    metadata,
    Column("organization_id", String(36), nullable=False),
    Column("user_id", String(36), nullable=False),
    Column("role", String(30), nullable=False),  # owner | admin | member
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("organization_id", "user_id", name="pk_org_member"),
)

projects = Table(
    "org_projects",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("organization_id", String(36), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("description", Text),
    Column("created_by_user_id", String(36), nullable=False),
    Column("created_at", String(32), nullable=False),
)

project_members = Table(
    "org_project_members",
    metadata,
    Column("project_id", String(36), nullable=False),
    Column("user_id", String(36), nullable=False),
    Column("role", String(30), nullable=False),  # project_owner | project_admin | project_member | viewer
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("project_id", "user_id", name="pk_project_member"),
)

permissions = Table(
    "org_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_type", String(30), nullable=False),  # organization | project
    Column("role", String(30), nullable=False),
    Column("action", String(100), nullable=False),
    UniqueConstraint("entity_type", "role", "action", name="uq_permission_rule"),
)

org_limits = Table(
    "org_limits",
    metadata,
    Column("org_id", String(36), primary_key=True),
    Column("limits", Text, nullable=False),  # JSON object serialized as text
)

org_feature_flags = Table(
    "org_feature_flags",
    metadata,
    Column("org_id", String(36), primary_key=True),
    Column("flags", Text, nullable=False),  # JSON object serialized as text
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    The request-scoped RLS transaction and the privileged context lookups
    use different pooled connections; WAL lets the readers proceed while the
    request transaction is open. Set per-connection because SQLite PRAGMAs
    are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def make_engine(db_url: str) -> Engine:
    """Create an Engine for db_url with the SQLite-specific tweaks applied."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def init_schema(engine: Engine) -> None:
    """Create any missing tables. Idempotent -- safe on every startup."""
    metadata.create_all(engine)
