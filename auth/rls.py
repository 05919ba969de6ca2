"""
auth/rls.py -- Request-scoped, RLS-tagged database sessions.

One request = one connection = one transaction:
  1. check out a connection from the pool and BEGIN
  2. tag it once with the resolved user id and org id
  3. hand it to the handler (stores accept it via their `conn` argument)
  4. COMMIT on success, ROLLBACK on any exception -- including the
     GeneratorExit raised when a client disconnects mid-request
  5. return the connection to the pool exactly once

On PostgreSQL the tags are transaction-local settings read by the row-level
security policies:

    SELECT set_config('app.current_user_id', :user_id, true)
    SELECT set_config('app.current_org_id',  :org_id,  true)

The third argument (is_local=true) scopes them to the transaction, so they
vanish at COMMIT/ROLLBACK and can never leak to the next borrower of the
pooled connection. Other dialects have no RLS; the tags are recorded in
Connection.info so the same code path (and its tag-once rule) runs in tests.

Tagging failure:
  End-user requests fail closed with RlsTaggingError (500). Only principals
  listed in Settings.service_account_ids may continue, on a fresh untagged
  transaction, with a warning in the log.

Layer rule: no imports from api/. auth/rls.py may import from fastapi
(Depends/Request) because it provides the session dependencies.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterator
from contextlib import contextmanager

from fastapi import Depends, Request
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.context import RequestContext
from auth.dependencies import get_effective_principal, require_org_context
from auth.models import User
from core.config import get_settings

logger = logging.getLogger("goalmap.auth.rls")

USER_SETTING = "app.current_user_id"
ORG_SETTING = "app.current_org_id"
_TAG_KEY = "rls_tags"


class RlsTaggingError(RuntimeError):
    """The request's database session could not be tagged for row-level security."""


def tag_connection(conn: Connection, user_id: str, org_id: str | None) -> None:
    """Tag conn with the request identity. Raises RuntimeError if already tagged."""
    if _TAG_KEY in conn.info:
        raise RuntimeError("connection already tagged for this request")
    if conn.dialect.name == "postgresql":
        conn.execute(text("SELECT set_config(:name, :value, true)"), {"name": USER_SETTING, "value": user_id})
        conn.execute(text("SELECT set_config(:name, :value, true)"), {"name": ORG_SETTING, "value": org_id or ""})
    conn.info[_TAG_KEY] = {"user_id": user_id, "org_id": org_id}


def current_tags(conn: Connection) -> dict | None:
    """Tags applied to conn in this request, or None when untagged."""
    return conn.info.get(_TAG_KEY)


@contextmanager
def rls_session(
    engine: Engine,
    user_id: str,
    org_id: str | None = None,
    trusted_ids: Collection[str] = (),
) -> Iterator[Connection]:
    """Yield one tagged connection inside one transaction for the whole request."""
    conn = engine.connect()
    try:
        trans = conn.begin()
        try:
            tag_connection(conn, user_id, org_id)
        except (SQLAlchemyError, RuntimeError) as exc:
            trans.rollback()
            if user_id not in trusted_ids:
                logger.error("RLS tagging failed for user %s: %s", user_id, exc)
                raise RlsTaggingError("Could not establish a tenant-scoped database session.") from exc
            logger.warning("RLS tagging failed for service account %s; continuing untagged", user_id)
            trans = conn.begin()

        try:
            yield conn
        except BaseException:
            trans.rollback()
            raise
        else:
            trans.commit()
    finally:
        conn.info.pop(_TAG_KEY, None)
        conn.close()


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_user_session(request: Request, user: User = Depends(get_effective_principal)) -> Iterator[Connection]:
    """Per-request connection tagged with the effective principal only (no org)."""
    with rls_session(request.app.state.engine, user.user_id, None, get_settings().service_account_ids) as conn:
        yield conn


def get_tenant_session(
    request: Request, ctx: RequestContext = Depends(require_org_context)
) -> Iterator[Connection]:
    """Per-request connection tagged with the effective principal and the active org."""
    with rls_session(
        request.app.state.engine,
        ctx.actor.user_id,
        ctx.org.id,
        get_settings().service_account_ids,
    ) as conn:
        yield conn
