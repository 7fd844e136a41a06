"""
tests/test_auth.py
"""
from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest
from conftest import ADMIN_PASS, ADMIN_USER, CSRF

from quill import blog
from quill.blog import (
    CSRF_COOKIE,
    SESSION_COOKIE,
    check_credentials,
    create_app,
    create_session,
    get_session,
    list_posts,
)


# ───────────────────────── helpers ────────────────────────────────────
def _login(client, username=ADMIN_USER, password=ADMIN_PASS):
    client.set_cookie(CSRF_COOKIE, CSRF)
    return client.post(
        "/admin",
        data={"username": username, "password": password, "csrf_token": CSRF},
    )


def _session_cookie_header(resp) -> str:
    (header,) = [
        h for h in resp.headers.getlist("Set-Cookie") if h.startswith(f"{SESSION_COOKIE}=")
    ]
    return header


def _count_sessions(db) -> int:
    return db.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]


# ───────────────────────── credentials ────────────────────────────────
@pytest.mark.parametrize(
    "username, password, ok",
    [
        (ADMIN_USER, ADMIN_PASS, True),
        (ADMIN_USER, "wrong", False),
        ("root", ADMIN_PASS, False),
        ("", "", False),
        (ADMIN_USER.upper(), ADMIN_PASS, False),
    ],
)
def test_check_credentials(config, username, password, ok):
    assert check_credentials(username, password, config=config) is ok


# ───────────────────────── login ──────────────────────────────────────
def test_login_form(client):
    resp = client.get("/admin")
    assert resp.status_code == 200
    body = resp.get_data(as_text=True)
    assert 'name="username"' in body
    assert 'name="password"' in body


def test_successful_login(client, db):
    resp = _login(client)

    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/")
    header = _session_cookie_header(resp)
    assert "HttpOnly" in header
    assert "SameSite=Lax" in header
    assert "Path=/" in header
    assert "Max-Age=86400" in header
    assert "Secure" not in header

    token = header.split(";", 1)[0].split("=", 1)[1]
    assert get_session(token, db=db).user_id == blog.ADMIN_USER_ID


def test_logged_in_client_sees_admin_pages(client):
    _login(client)
    assert client.get("/new").status_code == 200
    assert client.get("/settings").status_code == 200


@pytest.mark.parametrize(
    "username, password",
    [(ADMIN_USER, "wrong"), ("intruder", ADMIN_PASS), ("", "")],
)
def test_bad_credentials(client, db, username, password):
    resp = _login(client, username, password)

    assert resp.status_code == 401
    assert "Invalid username or password" in resp.get_data(as_text=True)
    assert not [
        h for h in resp.headers.getlist("Set-Cookie") if h.startswith(f"{SESSION_COOKIE}=")
    ]
    assert _count_sessions(db) == 0


def test_login_without_csrf_is_rejected(client, db):
    resp = client.post("/admin", data={"username": ADMIN_USER, "password": ADMIN_PASS})
    assert resp.status_code == 403
    assert _count_sessions(db) == 0


def test_secure_cookies(config):
    app = create_app(dataclasses.replace(config, secure_cookies=True))
    resp = _login(app.test_client())
    assert "Secure" in _session_cookie_header(resp)


def test_login_is_rate_limited(config):
    app = create_app(dataclasses.replace(config, login_rate_limit=3))
    client = app.test_client()

    for _ in range(3):
        assert _login(client, password="wrong").status_code == 401

    resp = _login(client)  # even the right password is refused now
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 0


def test_rate_limit_is_per_client(config):
    app = create_app(dataclasses.replace(config, login_rate_limit=1))
    one = app.test_client()
    two = app.test_client()
    two.environ_base["REMOTE_ADDR"] = "10.0.0.2"

    assert _login(one, password="wrong").status_code == 401
    assert _login(one).status_code == 429
    assert _login(two).status_code == 303


def test_rate_limit_ignores_get(config):
    app = create_app(dataclasses.replace(config, login_rate_limit=1))
    client = app.test_client()
    for _ in range(3):
        assert client.get("/admin").status_code == 200


def test_rate_limit_forgets_idle_clients(config, monkeypatch):
    app = create_app(dataclasses.replace(config, login_rate_limit=5))
    one = app.test_client()
    two = app.test_client()
    two.environ_base["REMOTE_ADDR"] = "10.0.0.2"

    monkeypatch.setattr(blog, "time", lambda: 1000.0)
    _login(one, password="wrong")
    assert set(app.extensions[blog.EXT_LOGIN_HITS]) == {"127.0.0.1"}

    monkeypatch.setattr(blog, "time", lambda: 1100.0)
    _login(two, password="wrong")
    assert set(app.extensions[blog.EXT_LOGIN_HITS]) == {"10.0.0.2"}


# ───────────────────────── gate ───────────────────────────────────────
@pytest.mark.parametrize(
    "path",
    ["/new", "/settings", "/edit/1", "/delete/1", "/edit/abc"],
)
def test_anonymous_get_is_redirected_to_login(client, path):
    resp = client.get(path)
    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/admin")


def test_anonymous_post_is_redirected_without_side_effects(client, db):
    client.set_cookie(CSRF_COOKIE, CSRF)
    resp = client.post(
        "/new",
        data={"title": "T", "content": "C", "action": "publish", "csrf_token": CSRF},
    )
    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/admin")
    assert list_posts(db=db) == []


def test_unknown_session_cookie_is_anonymous(client):
    client.set_cookie(SESSION_COOKIE, "f" * 64)
    assert client.get("/new").status_code == 303


def test_expired_session_is_anonymous(client, db, clock):
    token = create_session(blog.ADMIN_USER_ID, db=db, lifetime=timedelta(hours=1))
    client.set_cookie(SESSION_COOKIE, token)
    assert client.get("/new").status_code == 200

    clock.advance(hours=1)
    assert client.get("/new").status_code == 303


# ───────────────────────── logout ─────────────────────────────────────
def test_logout_ends_session(auth_client, db):
    token = auth_client.get_cookie(SESSION_COOKIE).value

    resp = auth_client.post("/logout", data={"csrf_token": CSRF})
    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/")
    assert get_session(token, db=db) is None

    header = _session_cookie_header(resp)
    assert "Max-Age=0" in header or "Expires=Thu, 01 Jan 1970" in header
    assert auth_client.get_cookie(SESSION_COOKIE) is None
    assert auth_client.get("/new").status_code == 303


def test_logout_get_just_redirects(auth_client, db):
    resp = auth_client.get("/logout")
    assert resp.status_code == 303
    assert _count_sessions(db) == 1


def test_logout_without_csrf_is_rejected(auth_client, db):
    resp = auth_client.post("/logout")
    assert resp.status_code == 403
    assert _count_sessions(db) == 1


def test_logout_when_anonymous(client):
    client.set_cookie(CSRF_COOKIE, CSRF)
    resp = client.post("/logout", data={"csrf_token": CSRF})
    assert resp.status_code == 303
