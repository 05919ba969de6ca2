"""
auth/store.py -- SQLAlchemy Core persistence layer for principals.

Pattern: Repository + Data Mapper (same as tenancy/store.py).
UserStore is the repository; _row_to_user is the mapper.
Route and dependency code never touches SQL directly.

Principal provisioning:
  ensure_principal() maps a remote identity to an internal user id. A user
  who registered locally (email only) and later signs in through the remote
  identity provider is matched by email and gets the subject linked on first
  sight. Unknown identities are inserted with INSERT .. ON CONFLICT DO NOTHING
  against the unique remote_subject and email columns and then re-read, so
  two concurrent first logins converge on one row instead of racing.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine

from auth.models import User
from core.database import new_id, now_iso, users

logger = logging.getLogger("goalmap.auth")


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(engine)
        uid = store.create_user(User(email="a@b.io", username="a", hashed_password=hash_password("pw")))
        user = store.get_by_email("a@b.io")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email (or remote subject)
        is already taken. POST /auth/register turns that into a 409.
        """
        user_id = user.user_id or new_id()
        with self.engine.connect() as conn:
            conn.execute(
                users.insert().values(
                    user_id=user_id,
                    email=user.email.strip().lower(),
                    username=user.username,
                    role=user.role,
                    hashed_password=user.hashed_password,
                    remote_subject=user.remote_subject,
                    created_at=now_iso(),
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str, conn: Connection | None = None) -> User | None:
        stmt = users.select().where(users.c.user_id == user_id)
        if conn is not None:
            row = conn.execute(stmt).fetchone()
        else:
            with self.engine.connect() as own:
                row = own.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_last_active_org(self, user_id: str, org_id: str | None, conn: Connection | None = None) -> None:
        """Persist the org the user last switched to. Read by the context builder."""
        stmt = update(users).where(users.c.user_id == user_id).values(last_active_org_id=org_id)
        if conn is not None:
            conn.execute(stmt)
            return
        with self.engine.begin() as own:
            own.execute(stmt)

    # ------------------------------------------------------------------
    # Principal resolution
    # ------------------------------------------------------------------

    def ensure_principal(self, external_subject: str, email: str | None) -> str:
        """Return the internal user id for a remote identity, provisioning it if new.

        1. Match on remote_subject OR email (subject match preferred).
        2. Found without a subject link: backfill it. The UPDATE only touches
           rows whose remote_subject is still NULL, so repeating it is a no-op.
        3. Not found: atomic insert-or-ignore, then re-read.
        """
        email_norm = email.strip().lower() if email else None
        with self.engine.begin() as conn:
            found = self._match_principal(conn, external_subject, email_norm)
            if found is not None:
                if found.remote_subject is None:
                    conn.execute(
                        update(users)
                        .where(users.c.user_id == found.user_id, users.c.remote_subject.is_(None))
                        .values(remote_subject=external_subject)
                    )
                    logger.info("Linked remote subject to existing user %s", found.user_id)
                return found.user_id

            if email_norm is None:
                # No email claim: fall back to the subject as the unique email key.
                email_norm = f"{external_subject}@remote.invalid"
            values = {
                "user_id": new_id(),
                "email": email_norm,
                "username": email_norm.split("@", 1)[0],
                "role": "user",
                "remote_subject": external_subject,
                "created_at": now_iso(),
            }
            conn.execute(_insert_ignore(conn).values(**values))

            found = self._match_principal(conn, external_subject, email_norm)
        if found is None:
            raise RuntimeError("principal provisioning failed for remote subject")
        if found.user_id == values["user_id"]:
            logger.info("Provisioned user %s on first remote login", found.user_id)
        return found.user_id

    def _match_principal(self, conn: Connection, subject: str, email: str | None) -> User | None:
        cond = users.c.remote_subject == subject
        if email:
            cond = or_(cond, users.c.email == email)
        rows = conn.execute(select(users).where(cond)).fetchall()
        if not rows:
            return None
        for row in rows:
            if row.remote_subject == subject:
                return _row_to_user(row)
        return _row_to_user(rows[0])

    def close(self) -> None:
        self.engine.dispose()


def _insert_ignore(conn: Connection):
    """INSERT .. ON CONFLICT DO NOTHING for the connection's dialect."""
    name = conn.dialect.name
    if name == "postgresql":
        return postgresql.insert(users).on_conflict_do_nothing()
    if name == "sqlite":
        return sqlite.insert(users).on_conflict_do_nothing()
    raise NotImplementedError(f"insert-or-ignore not supported on {name}")


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        email=row.email,
        username=row.username,
        role=row.role,
        hashed_password=row.hashed_password,
        remote_subject=row.remote_subject,
        last_active_org_id=row.last_active_org_id,
        created_at=row.created_at,
    )
