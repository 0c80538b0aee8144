"""
tests/conftest.py
"""
from __future__ import annotations

import time
from typing import Generator

import pytest
from flask.testing import FlaskClient

from forumshelf import bookmarks
from forumshelf.bookmarks import app
from forumshelf.rest import SupabaseError

USER_ID = "user-1"
CSRF = "test-token"
PAST = "2000-01-01T00:00:00+00:00"
FUTURE = "2999-01-01T00:00:00+00:00"


@pytest.fixture(scope="session", autouse=True)
def _configure_app() -> None:
    app.config.update(
        TESTING=True,
        SESSION_COOKIE_SECURE=False,
        SUPABASE_URL="https://example.supabase.co",
        SUPABASE_ANON_KEY="anon-key",
        BOOKMARKS_PER_PAGE=10,
        BOOKMARKS_ORDER_DESC=False,
    )


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        with app.app_context():
            yield client


class FakeSupabase:
    """In-memory stand-in for `SupabaseRest`; records every call."""

    def __init__(self):
        self.rows: list[dict] = []
        self.premium = True
        self.calls: list[tuple] = []
        self.failing: set[str] = set()
        self.session = {
            "access_token": "fresh-token",
            "refresh_token": "fresh-refresh",
            "expires_in": 3600,
            "user": {"id": USER_ID, "email": "me@example.com"},
        }

    def _maybe_fail(self, what: str) -> None:
        if what in self.failing:
            raise SupabaseError(f"{what} exploded", status=500)

    # helpers for tests
    def add_post(
        self,
        post_id,
        *,
        title: str | None = None,
        text: str = "body",
        owner: str = "someone-else",
        delete_date: str | None = None,
        images=(),
        author: str | None = "alice",
        author_premium: bool = False,
    ) -> dict:
        post = {
            "forum_id": post_id,
            "title": title or f"Post {post_id}",
            "text": text,
            "delete_date": delete_date,
            "created_at": "2024-01-01T00:00:00+00:00",
            "user_id_auth": owner,
            "users": {"user_name": author, "premium_flag": author_premium},
            "forum_images": [{"image_url": u} for u in images],
        }
        self.rows.append({"forums": post})
        return post

    # the client surface
    def select(self, table, columns="*", *, order=None, **filters):
        self.calls.append(("select", table, columns, order, filters))
        self._maybe_fail(table)
        if table == "users":
            return [{"premium_flag": self.premium}]
        if table == "bookmark":
            return list(self.rows)
        return []

    def delete(self, table, **filters):
        self.calls.append(("delete", table, filters))
        self._maybe_fail("delete")

    def rpc(self, fn, args=None):
        self.calls.append(("rpc", fn, args))
        self._maybe_fail("rpc")

    def sign_in_with_password(self, email, password):
        self.calls.append(("sign_in", email))
        self._maybe_fail("auth")
        return self.session

    def refresh_session(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        self._maybe_fail("auth")
        return self.session

    def ping(self):
        self._maybe_fail("ping")

    def called(self, kind: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == kind]


@pytest.fixture
def fake_db(monkeypatch) -> FakeSupabase:
    """Swap the REST client for a fake; background work runs inline."""
    fake = FakeSupabase()
    monkeypatch.setattr(bookmarks, "get_client", lambda access_token=None: fake)
    monkeypatch.setattr(bookmarks, "spawn", lambda fn, *args: fn(*args))
    return fake


def login(client, *, user_id: str = USER_ID, expires_at: float | None = None):
    with client.session_transaction() as s:
        s["access_token"] = "jwt"
        s["refresh_token"] = "refresh"
        s["expires_at"] = int(expires_at if expires_at is not None else time.time() + 3600)
        s["user_id"] = user_id
        s["email"] = "me@example.com"
        s["csrf"] = CSRF


@pytest.fixture
def logged_in(client, fake_db) -> FlaskClient:
    login(client)
    return client
