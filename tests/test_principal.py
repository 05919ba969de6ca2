"""
tests/test_principal.py -- Unit tests for UserStore.ensure_principal().

Covers:
  - first sight provisions a user (username = email local part, subject linked)
  - repeat calls return the same id (idempotent)
  - legacy email-only user gets the subject backfilled, not duplicated
  - subject match wins over an email match on a different row
  - losing a provisioning race converges on the winner's row
"""

from __future__ import annotations

from sqlalchemy import func, select

from auth.models import User
from core.database import users
from conftest import make_user


def _user_count(store) -> int:
    with store.engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(users)).scalar()


class TestEnsurePrincipal:
    def test_provisions_on_first_sight(self, user_store) -> None:
        uid = user_store.ensure_principal("sub-ada", "Ada.Lovelace@Example.com")
        user = user_store.get_by_id(uid)
        assert user is not None
        assert user.remote_subject == "sub-ada"
        assert user.email == "ada.lovelace@example.com"
        assert user.username == "ada.lovelace"
        assert user.role == "user"
        assert user.hashed_password is None

    def test_idempotent(self, user_store) -> None:
        first = user_store.ensure_principal("sub-ada", "ada@example.com")
        second = user_store.ensure_principal("sub-ada", "ada@example.com")
        assert first == second
        assert _user_count(user_store) == 1

    def test_backfills_legacy_email_user(self, user_store) -> None:
        """A locally registered user signing in remotely keeps their id."""
        legacy_id = make_user(user_store, "grace@example.com")
        uid = user_store.ensure_principal("sub-grace", "grace@example.com")
        assert uid == legacy_id
        assert user_store.get_by_id(uid).remote_subject == "sub-grace"
        assert _user_count(user_store) == 1

    def test_backfill_does_not_overwrite_existing_link(self, user_store) -> None:
        """An email match that is already linked to another subject keeps its link."""
        uid = user_store.ensure_principal("sub-one", "shared@example.com")
        again = user_store.ensure_principal("sub-two", "shared@example.com")
        assert again == uid
        assert user_store.get_by_id(uid).remote_subject == "sub-one"

    def test_subject_match_preferred(self, user_store) -> None:
        """When subject and email match different rows, the subject row wins."""
        by_subject = user_store.ensure_principal("sub-x", "x@example.com")
        make_user(user_store, "y@example.com")
        assert user_store.ensure_principal("sub-x", "y@example.com") == by_subject

    def test_missing_email_claim(self, user_store) -> None:
        uid = user_store.ensure_principal("sub-noemail", None)
        assert user_store.get_by_id(uid).remote_subject == "sub-noemail"
        assert user_store.ensure_principal("sub-noemail", None) == uid

    def test_lost_race_converges(self, user_store, monkeypatch) -> None:
        """If another request inserts between our lookup and our insert, we adopt its row.

        The first lookup is forced to miss, as if the competing insert
        committed right after it. The insert-or-ignore then hits the unique
        subject and the re-read returns the winner.
        """
        winner = user_store.create_user(
            User(email="race@example.com", username="race", remote_subject="sub-race")
        )
        original = user_store._match_principal
        calls = {"n": 0}

        def miss_once(conn, subject, email):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return original(conn, subject, email)

        monkeypatch.setattr(user_store, "_match_principal", miss_once)
        assert user_store.ensure_principal("sub-race", "race@example.com") == winner
        assert _user_count(user_store) == 1


class TestUserStore:
    def test_set_last_active_org(self, user_store) -> None:
        uid = make_user(user_store, "lin@example.com")
        user_store.set_last_active_org(uid, "0d5b2f0e-5f0a-4e7c-9d59-7f4f2b9e0a11")
        assert user_store.get_by_id(uid).last_active_org_id == "0d5b2f0e-5f0a-4e7c-9d59-7f4f2b9e0a11"

    def test_get_by_email_case_insensitive(self, user_store) -> None:
        uid = make_user(user_store, "Lin@Example.com")
        assert user_store.get_by_email("LIN@example.COM").user_id == uid

    def test_unknown_id(self, user_store) -> None:
        assert user_store.get_by_id("no-such-user") is None
