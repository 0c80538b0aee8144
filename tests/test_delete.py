"""
tests/test_delete.py
"""
from conftest import CSRF, USER_ID

from forumshelf.bookmarks import DELETE_POST_RPC


def test_confirmation_page(logged_in, fake_db):
    rv = logged_in.get("/bookmarks/delete/5?page=2")
    assert rv.status_code == 200
    assert b"Delete this post?" in rv.data
    assert b'name="csrf"' in rv.data
    assert fake_db.called("rpc") == []


def test_delete_success_redirects_back(logged_in, fake_db):
    rv = logged_in.post("/bookmarks/delete/5?page=2", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/bookmarks?page=2")
    assert fake_db.called("rpc") == [("rpc", DELETE_POST_RPC, {"forum_id_param": "5"})]

    with logged_in.session_transaction() as s:
        assert ("message", "Post deleted.") in s["_flashes"]


def test_delete_failure_is_reported(logged_in, fake_db):
    fake_db.failing.add("rpc")
    rv = logged_in.post("/bookmarks/delete/5", data={"csrf": CSRF}, follow_redirects=True)
    assert rv.status_code == 200
    assert b"Failed to delete the post." in rv.data
    assert b"Post deleted." not in rv.data


def test_delete_requires_csrf(logged_in, fake_db):
    rv = logged_in.post("/bookmarks/delete/5", data={})
    assert rv.status_code == 403
    assert fake_db.called("rpc") == []


def test_delete_requires_login(client, fake_db):
    rv = client.post("/bookmarks/delete/5", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]
    assert fake_db.called("rpc") == []


def test_delete_requires_premium(logged_in, fake_db):
    fake_db.premium = False
    rv = logged_in.post("/bookmarks/delete/5", data={"csrf": CSRF})
    assert rv.status_code == 403
    assert fake_db.called("rpc") == []


def test_owner_link_points_at_confirmation(logged_in, fake_db):
    fake_db.add_post(9, owner=USER_ID)
    html = logged_in.get("/bookmarks").get_data(as_text=True)
    assert 'href="/bookmarks/delete/9?page=1"' in html
