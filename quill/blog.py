#!/usr/bin/env python3
"""
A single-file, single-author blog: slugged posts with drafts, an RSS feed and
an admin area behind a cookie session with double-submit CSRF protection.
"""

import logging
import os
import re
import secrets
import sqlite3
import threading
from collections import defaultdict, deque
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import quote, urlparse

import click
import markdown
from dotenv import load_dotenv
from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    g,
    redirect,
    render_template_string,
    request,
    url_for,
)
from markdown.extensions import Extension
from markdown.treeprocessors import Treeprocessor
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

# Top-level route names. A post can never own one of these as its bare slug.
RESERVED_SLUGS = frozenset(
    {"admin", "logout", "feed", "new", "edit", "delete", "settings", "static"}
)
SLUG_FALLBACK = "untitled"
SLUG_RETRIES = 5

SESSION_COOKIE = "quill_session"
CSRF_COOKIE = "csrf"
CSRF_FIELD = "csrf_token"
SESSION_LIFETIME = timedelta(hours=24)
PURGE_INTERVAL_SEC = 60 * 60
TOKEN_BYTES = 32  # 256 bits
ADMIN_USER_ID = 1

THEMES = ("light", "dark")
FONTS = ("sans", "serif", "mono", "inter")
DEFAULT_BLOG_NAME = "quill"
DEFAULT_INTRO = (
    "Lorem ipsum dolor sit amet consectetur adipisicing elit. Dicta incidunt "
    "ipsa numquam impedit nostrum, ut cum a autem soluta animi, error, ea tenetur?"
)
DESCRIPTION_LEN = 160
FEED_DESCRIPTION = "A personal blog"
MAX_POST_ID = 2**63 - 1  # SQLite INTEGER
RFC2822_FMT = "%a, %d %b %Y %H:%M:%S %z"

EXT_CONFIG = "quill.config"
EXT_LOGIN_HITS = "quill.login_hits"

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9-]")
_SLUG_DASHES_RE = re.compile(r"-{2,}")
_ID_RE = re.compile(r"[0-9]+")

try:
    __version__ = version("quill-blog")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"

# Same logger as ``app.logger`` (Flask names it after the import name).
log = logging.getLogger(__name__)


###############################################################################
# Configuration
###############################################################################
def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


@dataclass(frozen=True)
class BlogConfig:
    """Everything the process needs to know at start-up; built once."""

    admin_password_hash: str
    admin_username: str = "admin"
    secure_cookies: bool = False
    database: str = "blog.db"
    session_lifetime: timedelta = SESSION_LIFETIME
    purge_interval: float = PURGE_INTERVAL_SEC
    login_rate_limit: int = 5
    behind_proxy: bool = False
    host: str = "127.0.0.1"
    port: int = 8080

    @classmethod
    def from_env(cls, environ=None, *, dotenv_path: str | Path | None = None):
        """
        Read ``ADMIN_USER``, ``ADMIN_PASS`` / ``ADMIN_PASS_HASH``,
        ``SECURE_COOKIES``, ``BLOG_DB``, ``BEHIND_PROXY``, ``LOGIN_RATE_LIMIT``,
        ``HOST`` and ``PORT``.

        When *environ* is omitted, a ``.env`` in the working directory is
        loaded first (already-set variables win).
        """
        if environ is None:
            load_dotenv(dotenv_path or Path.cwd() / ".env")
            environ = os.environ

        pw_hash = environ.get("ADMIN_PASS_HASH", "").strip()
        if not pw_hash:
            password = environ.get("ADMIN_PASS", "")
            if not password:
                log.warning("ADMIN_PASS not set, using default password")
                password = "password"
            pw_hash = generate_password_hash(password)

        return cls(
            admin_password_hash=pw_hash,
            admin_username=environ.get("ADMIN_USER", "").strip() or "admin",
            secure_cookies=_env_flag(environ.get("SECURE_COOKIES")),
            database=environ.get("BLOG_DB", "").strip() or "blog.db",
            login_rate_limit=int(environ.get("LOGIN_RATE_LIMIT", "5")),
            behind_proxy=_env_flag(environ.get("BEHIND_PROXY")),
            host=environ.get("HOST", "").strip() or "127.0.0.1",
            port=int(environ.get("PORT", "8080")),
        )


def blog_config() -> BlogConfig:
    return current_app.extensions[EXT_CONFIG]


###############################################################################
# Database helpers
###############################################################################
SCHEMA = """
------------------------------------------------------------
-- 1.  Posts
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS posts (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    slug        TEXT,
    content     TEXT NOT NULL,
    published   INTEGER NOT NULL DEFAULT 1,
    created_at  TEXT NOT NULL
);

------------------------------------------------------------
-- 2.  Login sessions
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS sessions (
    token       TEXT PRIMARY KEY,
    user_id     INTEGER NOT NULL,
    expires_at  TEXT NOT NULL
);

------------------------------------------------------------
-- 3.  Site-wide key/value settings
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: str) -> sqlite3.Connection:
    db = sqlite3.connect(path)
    db.row_factory = sqlite3.Row
    return db


def get_db():
    if "db" not in g:
        g.db = connect_db(blog_config().database)
    return g.db


def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    """Create the schema, upgrade older databases and seed defaults."""
    db = get_db()
    db.execute("PRAGMA journal_mode=WAL")
    db.executescript(SCHEMA)
    migrate_db(db)
    seed_settings(db=db)


def migrate_db(db) -> None:
    """
    Bring a database written by an older release up to date:

    • add ``posts.published`` (everything old counts as published)
    • add ``posts.slug`` and derive a unique slug for every post lacking one
    • rewrite bare ``YYYY-MM-DD HH:MM:SS`` timestamps as ISO-8601 UTC
    • drop sessions whose expiry is not in that format (forces a re-login)
    """
    cols = {row["name"] for row in db.execute("PRAGMA table_info(posts)")}
    if "published" not in cols:
        db.execute("ALTER TABLE posts ADD COLUMN published INTEGER NOT NULL DEFAULT 1")
    if "slug" not in cols:
        db.execute("ALTER TABLE posts ADD COLUMN slug TEXT")

    stale = db.execute(
        "SELECT id, created_at FROM posts "
        "WHERE created_at IS NULL OR created_at NOT LIKE '____-__-__T%'"
    ).fetchall()
    for row in stale:
        stamp = _parse_ts(row["created_at"]) if row["created_at"] else utc_now()
        db.execute("UPDATE posts SET created_at=? WHERE id=?", (_iso(stamp), row["id"]))

    unslugged = db.execute(
        "SELECT id, title FROM posts WHERE slug IS NULL OR slug = '' ORDER BY id"
    ).fetchall()
    for row in unslugged:
        base = generate_slug(row["title"] or "") or SLUG_FALLBACK
        slug = ensure_unique_slug(base, row["id"], db=db)
        db.execute("UPDATE posts SET slug=? WHERE id=?", (slug, row["id"]))
    if unslugged:
        log.info("derived slugs for %d existing post(s)", len(unslugged))

    db.execute("DELETE FROM sessions WHERE expires_at NOT LIKE '____-__-__T%'")
    db.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_posts_slug ON posts(slug)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_sessions_expiry ON sessions(expires_at)")
    db.commit()


def seed_settings(*, db) -> None:
    db.execute(
        "INSERT OR IGNORE INTO settings (key, value) VALUES ('intro', ?)",
        (DEFAULT_INTRO,),
    )
    db.commit()


def seed_posts(*, db) -> int:
    """Fill an empty blog with a few demo posts; returns how many were added."""
    if db.execute("SELECT 1 FROM posts LIMIT 1").fetchone():
        return 0
    demo = [
        ("Hey now", "Everything is awesome!"),
        ("What's the deal?", "What is happening?!"),
        ("Football", "Niners and stuff."),
    ]
    for title, content in demo:
        create_post(title, content, True, db=db)
    return len(demo)


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    # fixed width, so TEXT comparison in SQL orders like the datetimes do
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


###############################################################################
# Settings
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def theme_setting() -> str:
    theme = get_setting("theme", THEMES[0])
    return theme if theme in THEMES else THEMES[0]


def font_setting() -> str:
    font = get_setting("font", FONTS[0])
    return font if font in FONTS else FONTS[0]


###############################################################################
# Slugs
###############################################################################
def generate_slug(title: str) -> str:
    """
    "Hello, World!" → "hello-world".  Lower-case, spaces become hyphens,
    everything outside [a-z0-9-] is dropped, hyphen runs collapse and the
    ends are trimmed.  May return "".
    """
    slug = title.lower().replace(" ", "-")
    slug = _SLUG_STRIP_RE.sub("", slug)
    slug = _SLUG_DASHES_RE.sub("-", slug)
    return slug.strip("-")


def _slug_taken(slug: str, exclude_id: int, *, db) -> bool:
    row = db.execute(
        "SELECT 1 FROM posts WHERE slug=? AND id!=? LIMIT 1", (slug, exclude_id)
    ).fetchone()
    return row is not None


def ensure_unique_slug(base: str, exclude_id: int = 0, *, db) -> str:
    """
    First free slug out of ``base``, ``base-2``, ``base-3`` …

    A candidate is free when it is not reserved and no post other than
    ``exclude_id`` carries it (0 excludes nothing).  An empty *base* is
    returned unchanged; callers fall back to ``SLUG_FALLBACK`` first.
    """
    if not base:
        return base

    candidate, suffix = base, 2
    while candidate in RESERVED_SLUGS or _slug_taken(candidate, exclude_id, db=db):
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


###############################################################################
# Posts
###############################################################################
@dataclass(frozen=True)
class Post:
    id: int
    title: str
    slug: str
    content: str
    published: bool
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "Post":
        return cls(
            id=row["id"],
            title=row["title"],
            slug=row["slug"],
            content=row["content"],
            published=bool(row["published"]),
            created_at=_parse_ts(row["created_at"]),
        )


_POST_COLS = "id, title, slug, content, published, created_at"


def _store_with_slug(base: str, exclude_id: int, write, *, db) -> str:
    """
    Allocate a slug and hand it to *write*.  The UNIQUE index on
    ``posts.slug`` has the final word: if a concurrent writer grabbed the
    slug between check and write, allocate again (which yields the next
    suffix) up to ``SLUG_RETRIES`` times.
    """
    for attempt in range(1, SLUG_RETRIES + 1):
        slug = ensure_unique_slug(base, exclude_id, db=db)
        try:
            write(slug)
        except sqlite3.IntegrityError as exc:
            db.rollback()
            if "posts.slug" not in str(exc) or attempt == SLUG_RETRIES:
                raise
            log.warning(
                "slug %r was taken concurrently, retrying (%d/%d)",
                slug,
                attempt,
                SLUG_RETRIES,
            )
            continue
        db.commit()
        return slug
    raise AssertionError("unreachable")


def create_post(title: str, content: str, published: bool, *, db) -> str:
    """Insert a post and return the slug it ended up with."""
    base = generate_slug(title) or SLUG_FALLBACK
    created_at = _iso(utc_now())

    def write(slug):
        db.execute(
            "INSERT INTO posts (title, slug, content, published, created_at) "
            "VALUES (?,?,?,?,?)",
            (title, slug, content, int(published), created_at),
        )

    return _store_with_slug(base, 0, write, db=db)


def update_post(post_id: int, title: str, content: str, published: bool, *, db) -> str:
    """Rewrite a post; the slug is re-derived from the (possibly new) title."""
    base = generate_slug(title) or SLUG_FALLBACK

    def write(slug):
        db.execute(
            "UPDATE posts SET title=?, slug=?, content=?, published=? WHERE id=?",
            (title, slug, content, int(published), post_id),
        )

    return _store_with_slug(base, post_id, write, db=db)


def delete_post(post_id: int, *, db) -> None:
    db.execute("DELETE FROM posts WHERE id=?", (post_id,))
    db.commit()


def get_post_by_id(post_id: int, *, db) -> Post | None:
    row = db.execute(f"SELECT {_POST_COLS} FROM posts WHERE id=?", (post_id,)).fetchone()
    return Post.from_row(row) if row else None


def get_post_by_slug(slug: str, *, db) -> Post | None:
    row = db.execute(f"SELECT {_POST_COLS} FROM posts WHERE slug=?", (slug,)).fetchone()
    return Post.from_row(row) if row else None


def list_posts(*, db) -> list[Post]:
    """All posts, newest first; equal timestamps fall back to id, descending."""
    rows = db.execute(
        f"SELECT {_POST_COLS} FROM posts ORDER BY created_at DESC, id DESC"
    ).fetchall()
    return [Post.from_row(r) for r in rows]


def list_published_posts(*, db) -> list[Post]:
    rows = db.execute(
        f"SELECT {_POST_COLS} FROM posts WHERE published = 1 "
        "ORDER BY created_at DESC, id DESC"
    ).fetchall()
    return [Post.from_row(r) for r in rows]


###############################################################################
# Sessions
###############################################################################
@dataclass(frozen=True)
class Session:
    token: str
    user_id: int
    expires_at: datetime


def new_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def create_session(user_id: int, *, db, lifetime: timedelta = SESSION_LIFETIME) -> str:
    """
    Store a fresh token for *user_id*.  A duplicate token is an
    ``sqlite3.IntegrityError``, never an overwrite.
    """
    token = new_token()
    db.execute(
        "INSERT INTO sessions (token, user_id, expires_at) VALUES (?,?,?)",
        (token, user_id, _iso(utc_now() + lifetime)),
    )
    db.commit()
    return token


def get_session(token: str, *, db) -> Session | None:
    """The live session for *token*; expired rows count as absent."""
    if not token:
        return None
    row = db.execute(
        "SELECT token, user_id, expires_at FROM sessions "
        "WHERE token=? AND expires_at > ?",
        (token, _iso(utc_now())),
    ).fetchone()
    if row is None:
        return None
    return Session(row["token"], row["user_id"], _parse_ts(row["expires_at"]))


def delete_session(token: str, *, db) -> None:
    db.execute("DELETE FROM sessions WHERE token=?", (token,))
    db.commit()


def purge_expired_sessions(*, db) -> int:
    cur = db.execute("DELETE FROM sessions WHERE expires_at <= ?", (_iso(utc_now()),))
    db.commit()
    return cur.rowcount


class SessionSweeper:
    """
    Deletes expired sessions every *interval* seconds on a daemon thread.
    Only storage hygiene: ``get_session`` ignores expired rows anyway, so a
    failed sweep is logged and the loop carries on.
    """

    def __init__(self, database: str, interval: float = PURGE_INTERVAL_SEC):
        self.database = database
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        try:
            with closing(connect_db(self.database)) as db:
                purged = purge_expired_sessions(db=db)
        except Exception:
            log.exception("purging expired sessions failed")
            return 0
        if purged:
            log.info("purged %d expired session(s)", purged)
        return purged

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="session-sweeper", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


###############################################################################
# CSRF (double-submit cookie)
###############################################################################
def ensure_csrf_token(cookies) -> tuple[str, bool]:
    """
    Reuse the token from the CSRF cookie, or mint one.  The flag tells the
    caller whether it still has to set the cookie.
    """
    token = cookies.get(CSRF_COOKIE, "")
    if token:
        return token, False
    return new_token(), True


def validate_csrf(cookie_token: str, form_token: str) -> bool:
    if not cookie_token or not form_token:
        return False
    return secrets.compare_digest(cookie_token.encode(), form_token.encode())


def csrf_token() -> str:
    """This request's token; a new one is sent as a cookie on the way out."""
    if "csrf" not in g:
        g.csrf, g.csrf_is_new = ensure_csrf_token(request.cookies)
    return g.csrf


def require_csrf(view):
    """Reject POSTs whose form token does not match the CSRF cookie."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if request.method == "POST":
            cookie_token = request.cookies.get(CSRF_COOKIE, "")
            form_token = request.form.get(CSRF_FIELD, "")
            if not validate_csrf(cookie_token, form_token):
                current_app.logger.warning(
                    "CSRF check failed: %s %s from %s",
                    request.method,
                    request.path,
                    client_ip(),
                )
                abort(403)
        return view(*args, **kwargs)

    return wrapped


###############################################################################
# Authentication
###############################################################################
def client_ip() -> str:
    # left-most entry after ProxyFix = real client
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def check_credentials(username: str, password: str, *, config: BlogConfig) -> bool:
    """Both checks always run; the caller only learns the combined verdict."""
    user_ok = secrets.compare_digest(
        username.encode(), config.admin_username.encode()
    )
    pass_ok = check_password_hash(config.admin_password_hash, password)
    return user_ok and pass_ok


def current_session() -> Session | None:
    if "auth_session" not in g:
        token = request.cookies.get(SESSION_COOKIE, "")
        g.auth_session = get_session(token, db=get_db()) if token else None
    return g.auth_session


def is_authenticated() -> bool:
    return current_session() is not None


def require_auth(view):
    """Send anonymous callers to the login page (303) instead of *view*."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if not is_authenticated():
            return redirect(url_for("blog.login"), code=303)
        return view(*args, **kwargs)

    return wrapped


def rate_limit(window: int = 60):
    """Cap POSTs per client to ``login_rate_limit`` per *window* seconds."""

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            max_requests = blog_config().login_rate_limit
            if request.method != "POST" or max_requests <= 0:
                return view(*args, **kwargs)

            now = time()
            hits: DefaultDict[str, deque] = current_app.extensions[EXT_LOGIN_HITS]
            # forget clients whose last attempt fell out of the window
            for ip in [ip for ip, q in hits.items() if not q or now - q[-1] > window]:
                del hits[ip]

            dq = hits[client_ip()]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests, try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


###############################################################################
# Content rendering
###############################################################################
_SAFE_SCHEMES = {"http", "https", "mailto"}


class SafeLinkProcessor(Treeprocessor):
    """Strip href/src values whose scheme is not http(s) or mailto."""

    def run(self, root):
        for el in root.iter():
            for attr in ("href", "src"):
                target = el.get(attr)
                if target is None:
                    continue
                scheme = urlparse(target.strip()).scheme.lower()
                if scheme and scheme not in _SAFE_SCHEMES:
                    del el.attrib[attr]


class SafeLinkExtension(Extension):
    def extendMarkdown(self, md_inst):
        md_inst.treeprocessors.register(SafeLinkProcessor(md_inst), "safe_links", 0)


def _markdown_renderer():
    # a fresh instance per call: Markdown objects are not thread-safe
    return markdown.Markdown(
        extensions=[
            "nl2br",
            "pymdownx.betterem",
            "pymdownx.tilde",
            SafeLinkExtension(),
        ]
    )


def render_content(text: str | None) -> Markup:
    """
    Raw post text → HTML.  The text is HTML-escaped *before* Markdown runs,
    so authors get emphasis, links and paragraphs but no raw markup.
    """
    if not text:
        return Markup("")
    return Markup(_markdown_renderer().convert(escape(text, quote=False)))


def truncate(text: str, limit: int = DESCRIPTION_LEN) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def date_filter(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d") if dt else ""


###############################################################################
# Page contexts
###############################################################################
@dataclass(frozen=True, kw_only=True)
class PageContext:
    title: str
    blog_name: str
    theme: str
    font: str
    is_authenticated: bool
    csrf_token: str
    description: str = ""


@dataclass(frozen=True, kw_only=True)
class HomePage(PageContext):
    intro: str
    posts: list[Post]
    drafts: list[Post]


@dataclass(frozen=True, kw_only=True)
class PostPage(PageContext):
    post: Post


@dataclass(frozen=True, kw_only=True)
class PostFormPage(PageContext):
    action: str
    form_title: str = ""
    form_content: str = ""
    published: bool = True
    error: str = ""
    post: Post | None = None


@dataclass(frozen=True, kw_only=True)
class DeletePage(PageContext):
    post: Post


@dataclass(frozen=True, kw_only=True)
class SettingsPage(PageContext):
    intro: str
    themes: tuple[str, ...] = THEMES
    fonts: tuple[str, ...] = FONTS


@dataclass(frozen=True, kw_only=True)
class LoginPage(PageContext):
    error: str = ""
    username: str = ""


def page(cls, title: str, **fields):
    """Build *cls* with the site-wide fields filled from settings + request."""
    return cls(
        title=title,
        blog_name=get_setting("blog_name", DEFAULT_BLOG_NAME) or DEFAULT_BLOG_NAME,
        theme=theme_setting(),
        font=font_setting(),
        is_authenticated=is_authenticated(),
        csrf_token=csrf_token(),
        **fields,
    )


def bare_page(title: str) -> PageContext:
    """Context that needs neither the database nor a session (error pages)."""
    return PageContext(
        title=title,
        blog_name=DEFAULT_BLOG_NAME,
        theme=THEMES[0],
        font=FONTS[0],
        is_authenticated=False,
        csrf_token="",
    )


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ page.title }} | {{ page.blog_name }}</title>
{% if page.description %}<meta name="description" content="{{ page.description }}">{% endif %}
<link rel="alternate" type="application/rss+xml"
      href="{{ url_for('blog.feed') }}" title="{{ page.blog_name }} RSS">
<style>
:root{--bg:#fdfdfc;--fg:#222;--muted:#777;--accent:#8a5a44;--line:#ddd}
body[data-theme=dark]{--bg:#1f1f1f;--fg:#d6d6d6;--muted:#8a8a8a;--accent:#d9a07f;--line:#3a3a3a}
body{background:var(--bg);color:var(--fg);max-width:40em;margin:3rem auto;padding:0 1rem;line-height:1.6;font-size:1.1rem}
body[data-font=sans]{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,Arial,sans-serif}
body[data-font=serif]{font-family:Georgia,"Times New Roman",serif}
body[data-font=mono]{font-family:ui-monospace,Menlo,Consolas,monospace}
body[data-font=inter]{font-family:Inter,-apple-system,"Segoe UI",sans-serif}
a{color:var(--accent)}
header{display:flex;justify-content:space-between;align-items:baseline;border-bottom:1px solid var(--line);margin-bottom:2rem}
header .brand{font-size:1.4em;font-weight:700;text-decoration:none;color:var(--fg)}
nav a,nav form{margin-left:.8rem}
form.inline{display:inline}
ul.posts{list-style:none;padding:0}ul.posts li{margin:.4rem 0}
small,.muted{color:var(--muted)}
.badge{font-size:.7em;padding:.1em .5em;border:1px solid var(--muted);border-radius:1em;color:var(--muted)}
.error{color:#b33}
input[type=text],input[type=password],textarea{width:100%;box-sizing:border-box;padding:.4rem;font:inherit;background:var(--bg);color:var(--fg);border:1px solid var(--line)}
button{font:inherit;cursor:pointer}
footer{margin-top:3rem;border-top:1px solid var(--line);font-size:.8em;color:var(--muted)}
</style>
<body data-theme="{{ page.theme }}" data-font="{{ page.font }}">
{% macro csrf_field() -%}
<input type="hidden" name="csrf_token" value="{{ page.csrf_token }}">
{%- endmacro %}
<header>
    <a class="brand" href="{{ url_for('blog.home') }}">{{ page.blog_name }}</a>
    <nav>
        {% if page.is_authenticated %}
            <a href="{{ url_for('blog.create') }}">New</a>
            <a href="{{ url_for('blog.settings') }}">Settings</a>
            <form class="inline" method="post" action="{{ url_for('blog.logout') }}">
                {{ csrf_field() }}
                <button type="submit">Log out</button>
            </form>
        {% endif %}
        <a href="{{ url_for('blog.feed') }}">RSS</a>
    </nav>
</header>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer>
    <p>Built with quill v{{ version }}</p>
</footer>
<script>
document.querySelectorAll("textarea").forEach((ta) => {
    const grow = () => {
        const x = window.scrollX, y = window.scrollY;
        ta.style.height = "1px";
        ta.style.height = ta.scrollHeight + 2 + "px";
        window.scrollTo(x, y);
    };
    ta.addEventListener("input", grow);
    grow();
});
document.querySelectorAll('input[name="theme"]').forEach((r) =>
    r.addEventListener("change", () => { document.body.dataset.theme = r.value; }));
document.querySelectorAll('input[name="font"]').forEach((r) =>
    r.addEventListener("change", () => { document.body.dataset.font = r.value; }));
</script>
</body>
</html>
"""

TEMPL_HOME = wrap("""
    {% if page.intro %}
        <section class="intro">{{ page.intro|md }}</section>
    {% endif %}

    {% if page.drafts %}
        <h2>Drafts</h2>
        <ul class="posts drafts">
        {% for p in page.drafts %}
            <li>
                <a href="{{ url_for('blog.detail', slug=p.slug) }}">{{ p.title }}</a>
                <small>{{ p.created_at|date }}</small>
            </li>
        {% endfor %}
        </ul>
        <h2>Published</h2>
    {% endif %}

    <ul class="posts">
    {% for p in page.posts %}
        <li>
            <a href="{{ url_for('blog.detail', slug=p.slug) }}">{{ p.title }}</a>
            <small>{{ p.created_at|date }}</small>
        </li>
    {% else %}
        <li class="muted">Nothing here yet.</li>
    {% endfor %}
    </ul>
""")

TEMPL_DETAIL = wrap("""
    <article>
        <h1>{{ page.post.title }}
            {% if not page.post.published %}<span class="badge">draft</span>{% endif %}
        </h1>
        <small>{{ page.post.created_at|date }}</small>
        <div class="content">{{ page.post.content|md }}</div>
    </article>
    {% if page.is_authenticated %}
        <p>
            <a href="{{ url_for('blog.edit', post_id=page.post.id) }}">Edit</a>
            <a href="{{ url_for('blog.delete', post_id=page.post.id) }}">Delete</a>
        </p>
    {% endif %}
""")

TEMPL_POST_FORM = wrap("""
    <h1>{{ page.title }}</h1>
    {% if page.error %}<p class="error" role="alert">{{ page.error }}</p>{% endif %}
    <form method="post" action="{{ page.action }}">
        {{ csrf_field() }}
        <label for="title">Title</label>
        <input id="title" name="title" type="text" value="{{ page.form_title }}" required>
        <label for="content">Content</label>
        <textarea id="content" name="content" rows="12" required>{{ page.form_content }}</textarea>
        <p>
            <button type="submit" name="action" value="publish">Publish</button>
            <button type="submit" name="action" value="draft">Save draft</button>
        </p>
    </form>
""")

TEMPL_DELETE = wrap("""
    <h1>Delete post?</h1>
    <article>
        <h2>{{ page.post.title }}</h2>
        <div class="content">{{ page.post.content|md }}</div>
    </article>
    <form method="post" action="{{ url_for('blog.delete', post_id=page.post.id) }}">
        {{ csrf_field() }}
        <button type="submit">Yes, delete it</button>
        <a href="{{ url_for('blog.detail', slug=page.post.slug) }}">Cancel</a>
    </form>
""")

TEMPL_SETTINGS = wrap("""
    <h1>Settings</h1>
    <form method="post" action="{{ url_for('blog.settings') }}">
        {{ csrf_field() }}
        <label for="blog_name">Blog name</label>
        <input id="blog_name" name="blog_name" type="text" value="{{ page.blog_name }}">

        <label for="intro">Intro</label>
        <textarea id="intro" name="intro" rows="5">{{ page.intro }}</textarea>

        <fieldset>
            <legend>Theme</legend>
            {% for t in page.themes %}
            <label><input type="radio" name="theme" value="{{ t }}"{% if t == page.theme %} checked{% endif %}> {{ t }}</label>
            {% endfor %}
        </fieldset>

        <fieldset>
            <legend>Font</legend>
            {% for f in page.fonts %}
            <label><input type="radio" name="font" value="{{ f }}"{% if f == page.font %} checked{% endif %}> {{ f }}</label>
            {% endfor %}
        </fieldset>

        <p><button type="submit">Save</button></p>
    </form>
""")

TEMPL_LOGIN = wrap("""
    <h1>Log in</h1>
    {% if page.error %}<p class="error" role="alert">{{ page.error }}</p>{% endif %}
    <form method="post" action="{{ url_for('blog.login') }}">
        {{ csrf_field() }}
        <label for="username">Username</label>
        <input id="username" name="username" type="text" autocomplete="username"
               value="{{ page.username }}" required>
        <label for="password">Password</label>
        <input id="password" name="password" type="password"
               autocomplete="current-password" required>
        <p><button type="submit">Log in</button></p>
    </form>
""")

TEMPL_404 = wrap("""
    <h1>Page not found</h1>
    <p>The URL you asked for doesn't exist.
       <a href="{{ url_for('blog.home') }}">Back to the front page</a>.</p>
""")

TEMPL_500 = wrap("""
    <h1>Internal Server Error</h1>
    <p>Something went wrong on our side. Please try again in a minute.</p>
""")


###############################################################################
# Views
###############################################################################
bp = Blueprint("blog", __name__, cli_group=None)


def _parse_id(raw: str) -> int:
    if not _ID_RE.fullmatch(raw):
        abort(400, description="Invalid post ID")
    pid = int(raw)
    if pid > MAX_POST_ID:
        abort(400, description="Invalid post ID")
    return pid


def _post_form() -> tuple[str, str, bool]:
    title = request.form.get("title", "").strip()
    content = request.form.get("content", "")
    published = request.form.get("action") == "publish"
    return title, content, published


@bp.route("/")
def home():
    db = get_db()
    if is_authenticated():
        everything = list_posts(db=db)
        posts = [p for p in everything if p.published]
        drafts = [p for p in everything if not p.published]
    else:
        posts, drafts = list_published_posts(db=db), []

    intro = get_setting("intro", "")
    return render_template_string(
        TEMPL_HOME,
        page=page(
            HomePage,
            "Home",
            description=truncate(intro),
            intro=intro,
            posts=posts,
            drafts=drafts,
        ),
    )


@bp.route("/<slug>")
def detail(slug):
    post = get_post_by_slug(slug, db=get_db())
    if post is None or (not post.published and not is_authenticated()):
        abort(404)
    return render_template_string(
        TEMPL_DETAIL,
        page=page(PostPage, post.title, description=truncate(post.content), post=post),
    )


@bp.route("/post/<slug>")
def legacy_post(slug):
    """Old ``/post/<slug>`` links live on at ``/<slug>``."""
    return redirect(url_for("blog.detail", slug=slug), code=301)


@bp.route("/new", methods=["GET", "POST"])
@require_auth
@require_csrf
def create():
    if request.method == "POST":
        title, content, published = _post_form()
        if not title or not content.strip():
            return render_template_string(
                TEMPL_POST_FORM,
                page=page(
                    PostFormPage,
                    "New Post",
                    action=url_for("blog.create"),
                    form_title=title,
                    form_content=content,
                    published=published,
                    error="Title and content are required.",
                ),
            ), 400

        slug = create_post(title, content, published, db=get_db())
        return redirect(url_for("blog.detail", slug=slug), code=303)

    return render_template_string(
        TEMPL_POST_FORM,
        page=page(PostFormPage, "New Post", action=url_for("blog.create")),
    )


@bp.route("/edit/<post_id>", methods=["GET", "POST"])
@require_auth
@require_csrf
def edit(post_id):
    pid = _parse_id(post_id)
    db = get_db()
    post = get_post_by_id(pid, db=db)
    if post is None:
        abort(404)

    if request.method == "POST":
        title, content, published = _post_form()
        if not title or not content.strip():
            return render_template_string(
                TEMPL_POST_FORM,
                page=page(
                    PostFormPage,
                    f"Editing “{post.title}”",
                    action=url_for("blog.edit", post_id=pid),
                    form_title=title,
                    form_content=content,
                    published=published,
                    error="Title and content are required.",
                    post=post,
                ),
            ), 400

        slug = update_post(pid, title, content, published, db=db)
        return redirect(url_for("blog.detail", slug=slug), code=303)

    return render_template_string(
        TEMPL_POST_FORM,
        page=page(
            PostFormPage,
            f"Editing “{post.title}”",
            action=url_for("blog.edit", post_id=pid),
            form_title=post.title,
            form_content=post.content,
            published=post.published,
            post=post,
        ),
    )


@bp.route("/delete/<post_id>", methods=["GET", "POST"])
@require_auth
@require_csrf
def delete(post_id):
    pid = _parse_id(post_id)
    db = get_db()

    if request.method == "POST":
        delete_post(pid, db=db)  # already gone is fine
        return redirect(url_for("blog.home"), code=303)

    post = get_post_by_id(pid, db=db)
    if post is None:
        abort(404)
    return render_template_string(
        TEMPL_DELETE, page=page(DeletePage, f"Deleting “{post.title}”", post=post)
    )


@bp.route("/settings", methods=["GET", "POST"])
@require_auth
@require_csrf
def settings():
    if request.method == "POST":
        theme = request.form.get("theme", "")
        font = request.form.get("font", "")
        set_setting("intro", request.form.get("intro", ""))
        set_setting("blog_name", request.form.get("blog_name", "").strip())
        set_setting("theme", theme if theme in THEMES else THEMES[0])
        set_setting("font", font if font in FONTS else FONTS[0])
        return redirect(url_for("blog.home"), code=303)

    return render_template_string(
        TEMPL_SETTINGS,
        page=page(SettingsPage, "Settings", intro=get_setting("intro", "")),
    )


@bp.route("/admin", methods=["GET", "POST"])
@rate_limit(window=60)
@require_csrf
def login():
    if request.method == "POST":
        config = blog_config()
        username = request.form.get("username", "")
        password = request.form.get("password", "")

        if not check_credentials(username, password, config=config):
            current_app.logger.warning("failed login from %s", client_ip())
            return render_template_string(
                TEMPL_LOGIN,
                page=page(
                    LoginPage,
                    "Login",
                    error="Invalid username or password",
                    username=username,
                ),
            ), 401

        token = create_session(
            ADMIN_USER_ID, db=get_db(), lifetime=config.session_lifetime
        )
        resp = redirect(url_for("blog.home"), code=303)
        resp.set_cookie(
            SESSION_COOKIE,
            token,
            max_age=int(config.session_lifetime.total_seconds()),
            path="/",
            secure=config.secure_cookies,
            httponly=True,
            samesite="Lax",
        )
        return resp

    return render_template_string(TEMPL_LOGIN, page=page(LoginPage, "Login"))


@bp.route("/logout", methods=["GET", "POST"])
@require_csrf
def logout():
    resp = redirect(url_for("blog.home"), code=303)
    if request.method != "POST":
        return resp

    token = request.cookies.get(SESSION_COOKIE)
    if token:
        delete_session(token, db=get_db())
    resp.delete_cookie(SESSION_COOKIE, path="/")
    return resp


###############################################################################
# RSS feed
###############################################################################
def _rfc2822(dt: datetime) -> str:
    """Tue, 24 Jun 2025 09:22:20 +0000"""
    return dt.astimezone(timezone.utc).strftime(RFC2822_FMT)


def _rss(posts, *, title, description, site_url, feed_url) -> str:
    """Build an RSS 2.0 document (single string) for *posts*."""
    items = []
    for p in posts:
        link = f"{site_url}/{quote(p.slug)}"
        items.append(
            f"""
    <item>
      <title>{escape(p.title)}</title>
      <link>{escape(link)}</link>
      <guid isPermaLink="true">{escape(link)}</guid>
      <pubDate>{_rfc2822(p.created_at)}</pubDate>
      <description>{escape(p.content)}</description>
    </item>"""
        )

    return f"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0"
     xmlns:atom="http://www.w3.org/2005/Atom">
  <channel>
    <title>{escape(title)}</title>
    <link>{escape(site_url)}</link>
    <description>{escape(description)}</description>
    <generator>quill</generator>
    <lastBuildDate>{_rfc2822(utc_now())}</lastBuildDate>
    <atom:link href="{escape(feed_url)}"
               rel="self"
               type="application/rss+xml" />
    {"".join(items)}
  </channel>
</rss>"""


@bp.route("/feed")
def feed():
    posts = list_published_posts(db=get_db())
    xml = _rss(
        posts,
        title=get_setting("blog_name", DEFAULT_BLOG_NAME) or DEFAULT_BLOG_NAME,
        description=FEED_DESCRIPTION,
        site_url=request.url_root.rstrip("/"),
        feed_url=url_for("blog.feed", _external=True),
    )
    return current_app.response_class(xml, mimetype="application/rss+xml")


###############################################################################
# Response hooks + error pages
###############################################################################
@bp.after_app_request
def set_csrf_cookie(resp):
    if g.get("csrf_is_new"):
        config = blog_config()
        resp.set_cookie(
            CSRF_COOKIE,
            g.csrf,
            max_age=int(config.session_lifetime.total_seconds()),
            path="/",
            secure=config.secure_cookies,
            httponly=False,
            samesite="Strict",
        )
        g.csrf_is_new = False
    return resp


@bp.after_app_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@bp.app_errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, page=page(PageContext, "Not found")), 404


@bp.app_errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page.  Flask has already logged the traceback; the page
    itself stays away from the database in case that is what broke.
    """
    return render_template_string(
        TEMPL_500, page=bare_page("Internal Server Error")
    ), 500


###############################################################################
# CLI
###############################################################################
@bp.cli.command("init-db")
def cli_init_db():
    """Create the schema and upgrade an older database (idempotent)."""
    init_db()
    click.secho("✅  Database ready.", fg="green")


@bp.cli.command("seed")
def cli_seed():
    """Add a few demo posts to an empty blog."""
    added = seed_posts(db=get_db())
    if added:
        click.secho(f"🌱  Seeded {added} demo posts.", fg="green")
    else:
        click.echo("Blog already has posts; nothing seeded.")


@bp.cli.command("purge-sessions")
def cli_purge_sessions():
    """Delete expired login sessions now."""
    purged = purge_expired_sessions(db=get_db())
    click.echo(f"Purged {purged} expired session(s).")


@bp.cli.command("hash-password")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
def cli_hash_password(password: str):
    """Print a hash suitable for ADMIN_PASS_HASH."""
    click.echo(generate_password_hash(password))


###############################################################################
# App factory
###############################################################################
def create_app(config: BlogConfig | None = None) -> Flask:
    config = config or BlogConfig.from_env()

    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.extensions[EXT_CONFIG] = config
    app.extensions[EXT_LOGIN_HITS] = defaultdict(deque)
    if config.behind_proxy:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    app.jinja_env.filters["md"] = render_content
    app.jinja_env.filters["date"] = date_filter
    app.jinja_env.globals["version"] = __version__
    app.teardown_appcontext(close_db)
    app.register_blueprint(bp)

    with app.app_context():
        init_db()
        try:
            purged = purge_expired_sessions(db=get_db())
        except sqlite3.Error:
            app.logger.exception("purging expired sessions failed")
        else:
            if purged:
                app.logger.info("purged %d expired session(s)", purged)
    return app


###############################################################################
# main
###############################################################################
def main() -> None:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    config = BlogConfig.from_env()
    app = create_app(config)

    sweeper = SessionSweeper(config.database, interval=config.purge_interval)
    sweeper.start()
    app.logger.info("serving on %s:%d", config.host, config.port)
    try:
        app.run(host=config.host, port=config.port, threaded=True)
    finally:
        sweeper.stop(timeout=5)


if __name__ == "__main__":
    main()
