"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import sqlite3
from pathlib import Path
from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient
from werkzeug.security import generate_password_hash

from quill import blog
from quill.blog import BlogConfig, connect_db, create_app

ADMIN_USER = "admin"
ADMIN_PASS = "correct horse battery staple"
CSRF = "a" * 64

# hash once for the whole session, scrypt is slow
_PASSWORD_HASH = generate_password_hash(ADMIN_PASS)


class FakeClock:
    """Stands in for ``blog.utc_now``; time only moves when told to."""

    def __init__(self) -> None:
        self.now = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def __call__(self) -> _dt.datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += _dt.timedelta(**delta)


@pytest.fixture(autouse=True)
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr(blog, "utc_now", fake)
    return fake


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """A brand-new database file per test."""
    return tmp_path / "test.sqlite3"


@pytest.fixture
def config(db_path: Path) -> BlogConfig:
    return BlogConfig(
        admin_password_hash=_PASSWORD_HASH,
        admin_username=ADMIN_USER,
        database=str(db_path),
    )


@pytest.fixture
def app(config: BlogConfig) -> Flask:
    app = create_app(config)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app: Flask) -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        yield client


@pytest.fixture
def db(app: Flask, config: BlogConfig) -> Generator[sqlite3.Connection, None, None]:
    """
    A direct connection to the app's database (schema already created).
    Deliberately *not* inside an app context, so requests made by the test
    client get their own ``g``.
    """
    conn = connect_db(config.database)
    yield conn
    conn.close()


@pytest.fixture
def auth_client(client: FlaskClient, db: sqlite3.Connection) -> FlaskClient:
    """Test client carrying a live admin session and a known CSRF cookie."""
    token = blog.create_session(blog.ADMIN_USER_ID, db=db)
    client.set_cookie(blog.SESSION_COOKIE, token)
    client.set_cookie(blog.CSRF_COOKIE, CSRF)
    return client
