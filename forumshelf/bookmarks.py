#!/usr/bin/env python3
"""
The forum's "bookmarked posts" page.

Premium members see the posts they bookmarked, newest data straight from
the hosted database, ten per page.  Expired posts are dropped from the
view and their bookmarks cleaned up in the background; owners can delete
their own posts from here.
"""

import os
import secrets
import threading
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from urllib.parse import urlencode, urlparse

import click
from flask import (
    Flask,
    abort,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup, escape
from werkzeug.middleware.proxy_fix import ProxyFix

from forumshelf.rest import SupabaseError, SupabaseRest, in_list

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"

PAGE_DEFAULT = 10
BODY_PREVIEW_LEN = 50
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

# bookmark → post → author → images, in one round-trip
POST_SELECT = (
    "forums("
    "forum_id,title,text,delete_date,created_at,user_id_auth,"
    "users!forums_user_id_auth_fkey(user_name,premium_flag),"
    "forum_images(image_url)"
    ")"
)
DELETE_POST_RPC = "delete_forum_with_related_data"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


_ENV = _read_env_file()


def env(key: str, default: str = "") -> str:
    """Process environment first, then the .env file beside the package."""
    return (os.environ.get(key) or _ENV.get(key) or default).strip()


def _truthy(val: str) -> bool:
    return val.strip().lower() in {"1", "true", "yes", "on"}


SECRET_KEY = env("FORUMSHELF_SECRET_KEY")
if not SECRET_KEY:
    SECRET_KEY = (
        SECRET_FILE.read_text().strip()
        if SECRET_FILE.exists()
        else secrets.token_hex(32)
    )
    SECRET_FILE.write_text(SECRET_KEY)

try:
    __version__ = version("forumshelf")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    SUPABASE_URL=env("SUPABASE_URL"),
    SUPABASE_ANON_KEY=env("SUPABASE_ANON_KEY"),
    SUPABASE_TIMEOUT=float(env("SUPABASE_TIMEOUT", "10")),
    BOOKMARKS_PER_PAGE=env("BOOKMARKS_PER_PAGE", str(PAGE_DEFAULT)),
    # The page has always been served oldest-bookmark-first (its sort flag
    # never reached the query); flip this for newest-first.
    BOOKMARKS_ORDER_DESC=_truthy(env("BOOKMARKS_ORDER_DESC", "0")),
    FORUM_BASE_URL=env("FORUM_BASE_URL", "/forums/html"),
    PREMIUM_BADGE_URL=env(
        "PREMIUM_BADGE_URL", "/common/circle-check-solid-full.svg"
    ),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def get_client(access_token: str | None = None) -> SupabaseRest:
    return SupabaseRest(
        app.config["SUPABASE_URL"],
        app.config["SUPABASE_ANON_KEY"],
        access_token=access_token,
        timeout=app.config["SUPABASE_TIMEOUT"],
    )


def spawn(fn, *args) -> threading.Thread:
    """Run *fn* on a daemon thread and forget about it."""
    t = threading.Thread(target=fn, args=args, daemon=True)
    t.start()
    return t


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def parse_ts(value: str) -> datetime:
    """
    Parse a timestamp as the database returns it.

    Naive values are taken as UTC; a trailing ``Z`` is accepted.
    Raises ValueError on garbage.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'}"


def time_ago(value: str | None, now: datetime | None = None) -> str:
    if not value:
        return ""
    try:
        then = parse_ts(value)
    except ValueError:
        return value
    secs = int(((now or utc_now()) - then).total_seconds())
    if secs < 60:
        return "just now"
    if secs < 3600:
        return f"{_plural(secs // 60, 'minute')} ago"
    if secs < 86400:
        return f"{_plural(secs // 3600, 'hour')} ago"
    if secs < 30 * 86400:
        return f"{_plural(secs // 86400, 'day')} ago"
    return then.astimezone().strftime("%Y.%m.%d")


def time_left(value: str | None, now: datetime | None = None) -> str:
    if not value:
        return "No expiry"
    try:
        until = parse_ts(value)
    except ValueError:
        return ""
    secs = int((until - (now or utc_now())).total_seconds())
    if secs <= 0:
        return "Expired"
    if secs >= 86400:
        return f"{_plural(secs // 86400, 'day')} left"
    if secs >= 3600:
        return f"{_plural(secs // 3600, 'hour')} left"
    return f"{_plural(max(secs // 60, 1), 'minute')} left"


###############################################################################
# Bookmarks: fetch, expiry filter, cleanup
###############################################################################
def fetch_bookmarked_posts(client: SupabaseRest, user_id: str) -> list[dict]:
    """Every bookmark of *user_id*, each carrying its joined ``forums`` post."""
    direction = "desc" if app.config["BOOKMARKS_ORDER_DESC"] else "asc"
    return client.select(
        "bookmark",
        POST_SELECT,
        user_id=f"eq.{user_id}",
        order=f"created_at.{direction}",
    )


def is_valid_post(post: dict | None, now: datetime) -> bool:
    """Present, and either never expires or expires strictly after *now*."""
    if not post:
        return False
    expiry = post.get("delete_date")
    if expiry is None:
        return True
    try:
        return parse_ts(expiry) > now
    except ValueError:
        return False


def partition_posts(items, now: datetime | None = None) -> tuple[list[dict], list]:
    """
    Split fetched bookmark rows into ``(valid_posts, expired_post_ids)``.

    • fetch order is preserved for the valid posts
    • rows whose post vanished from the join are dropped without an id
    """
    now = now or utc_now()
    valid, expired = [], []
    for item in items or ():
        post = item.get("forums")
        if is_valid_post(post, now):
            valid.append(post)
        elif post:
            expired.append(post["forum_id"])
    return valid, expired


def purge_expired_bookmarks(access_token: str, user_id: str, post_ids: list) -> None:
    """Best-effort cleanup; nobody waits for it and failures only get logged."""
    try:
        get_client(access_token).delete(
            "bookmark", user_id=f"eq.{user_id}", post_id=in_list(post_ids)
        )
    except SupabaseError:
        app.logger.exception("Purging expired bookmarks %s failed", post_ids)


def is_premium(client: SupabaseRest, user_id: str) -> bool:
    rows = client.select("users", "premium_flag", id=f"eq.{user_id}")
    return bool(rows) and rows[0].get("premium_flag") is True


###############################################################################
# Pagination
###############################################################################
def page_size() -> int:
    try:
        return max(1, int(app.config["BOOKMARKS_PER_PAGE"]))
    except (TypeError, ValueError):
        return PAGE_DEFAULT


def parse_page(raw) -> int:
    try:
        page = int(raw)
    except (TypeError, ValueError):
        return 1
    return page if page > 0 else 1


def page_window(total: int, page: int, per_page: int = PAGE_DEFAULT) -> dict:
    total_pages = (total + per_page - 1) // per_page
    offset = (page - 1) * per_page
    return {
        "page": page,
        "per_page": per_page,
        "offset": offset,
        "end": min(offset + per_page, total),
        "total_pages": total_pages,
        "prev": page - 1 if page > 1 else None,
        "next": page + 1 if page < total_pages else None,
        "pages": list(range(1, total_pages + 1)),
    }


###############################################################################
# Template filters + globals
###############################################################################
def truncate_body(text: str | None, limit: int = BODY_PREVIEW_LEN) -> str:
    text = text or ""
    return text[:limit] + "..." if len(text) > limit else text


def nl2br(text: str | None) -> Markup:
    lines = (text or "").replace("\r\n", "\n").split("\n")
    return Markup("<br>").join(escape(ln) for ln in lines)


@app.template_filter("preview")
def preview_filter(text: str | None) -> Markup:
    return nl2br(truncate_body(text))


app.add_template_filter(time_ago, "ago")
app.add_template_filter(time_left, "left")


def forum_url(page: str, **params) -> str:
    base = app.config["FORUM_BASE_URL"].rstrip("/")
    return f"{base}/{page}?{urlencode(params)}" if params else f"{base}/{page}"


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


app.jinja_env.globals.update(
    forum_url=forum_url,
    csrf_token=_csrf_token,
    version=__version__,
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
<title>{{ title or 'Bookmarks' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:42em;margin:auto;padding:13px;line-height:1.5}
.post-item{position:relative;padding:1em 0;border-bottom:1px solid #ddd}
.post-item-link{color:inherit;text-decoration:none}
.post-item-main.has-thumbnail{padding-right:7em}
.post-item-thumbnail{position:absolute;right:0;top:1em}
.post-item-thumbnail img{width:6em;height:6em;object-fit:cover;border-radius:4px}
.post-item-actions{margin-top:.5em;display:flex;gap:.6em}
.premium-badge{width:1em;height:1em;vertical-align:middle}
.muted{color:gray}
.flashes{list-style:none;padding:0}
.flashes li{background:#fff4d6;border:1px solid #e8c66a;padding:.4em .8em;margin-bottom:.4em}
#pagination-container{margin-top:2em;display:flex;gap:.6em}
.current-page{font-weight:bold;border-bottom:2px solid #888}
</style>
<body>
<nav style="display:flex;justify-content:space-between;">
    <a href="{{ url_for('bookmarks') }}">Bookmarks</a>
    {% if session.get('access_token') %}
        <span>{{ session.get('email', '') }} · <a href="{{ url_for('logout') }}">Log out</a></span>
    {% else %}
        <a href="{{ url_for('login') }}">Log in</a>
    {% endif %}
</nav>
{% with msgs = get_flashed_messages() %}
  {% if msgs %}
    <ul class="flashes">
    {% for m in msgs %}<li>{{ m }}</li>{% endfor %}
    </ul>
  {% endif %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
</body>
</html>
"""


TEMPL_BOOKMARKS = wrap("""
{% macro post_item(p, viewer_id, page) -%}
{% set images = p.get('forum_images') or [] %}
{% set author = p.get('users') or {} %}
<article class="post-item">
    <a href="{{ forum_url('forum_detail.html', id=p['forum_id']) }}" class="post-item-link">
        <div class="post-item-main{% if images %} has-thumbnail{% endif %}">
            <div class="post-item-content">
                <h3>{{ p['title'] }} <small class="muted">{{ p['created_at']|ago }}</small></h3>
                <p>{{ p['text']|preview }}</p>
                <small>Posted by: {{ author.get('user_name') or 'Unknown' }}
                    {%- if author.get('premium_flag') is sameas true %}
                    <img src="{{ config.PREMIUM_BADGE_URL }}" class="premium-badge" alt="premium">
                    {%- endif %}</small>
                <br>
                <small class="muted">{{ p['delete_date']|left }}</small>
            </div>
        </div>
    </a>
    {% if images %}
    <div class="post-item-thumbnail"><img src="{{ images[0]['image_url'] }}" alt="thumbnail"></div>
    {% endif %}
    {% if viewer_id and p['user_id_auth'] == viewer_id %}
    <div class="post-item-actions">
        <a href="{{ forum_url('forum_input.html', edit_id=p['forum_id']) }}" class="action-button edit-button">Edit</a>
        <a href="{{ url_for('delete_post', post_id=p['forum_id'], page=page) }}"
           class="action-button delete-button" data-post-id="{{ p['forum_id'] }}">Delete</a>
    </div>
    {% endif %}
</article>
{%- endmacro %}
{% block body %}
<h1>Bookmarks</h1>
<div id="bookmarks-list">
{% if error %}
    <p>An error occurred while loading bookmarks.</p>
{% elif empty %}
    <p>You haven't bookmarked any posts yet.</p>
{% else %}
    {% for p in posts %}{{ post_item(p, viewer_id, win['page']) }}{% endfor %}
{% endif %}
</div>
<nav id="pagination-container">
{% if win and win['total_pages'] > 1 %}
    {% if win['prev'] %}
        <a href="{{ url_for('bookmarks', page=win['prev']) }}" class="prev-page">« Prev</a>
    {% endif %}
    {% for n in win['pages'] %}
        {% if n == win['page'] %}
            <span class="current-page">{{ n }}</span>
        {% else %}
            <a href="{{ url_for('bookmarks', page=n) }}">{{ n }}</a>
        {% endif %}
    {% endfor %}
    {% if win['next'] %}
        <a href="{{ url_for('bookmarks', page=win['next']) }}" class="next-page">Next »</a>
    {% endif %}
{% endif %}
</nav>
{% endblock %}
""")

TEMPL_DENIED = wrap("""
{% block body %}
<h1>Access denied</h1>
<p>This feature is for premium members only.</p>
{% endblock %}
""")

TEMPL_DELETE_POST = wrap("""
{% block body %}
<h2>Delete this post?</h2>
<p>The post and everything attached to it will be removed for good.</p>
<form method="post" action="{{ url_for('delete_post', post_id=post_id, page=page) }}">
    {% if csrf_token() %}
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <button style="background:#c00;color:#fff;">Yes – delete it</button>
    <a href="{{ url_for('bookmarks', page=page) }}" style="margin-left:1rem;">Cancel</a>
</form>
{% endblock %}
""")

TEMPL_LOGIN = wrap("""
{% block body %}
<h1>Log in</h1>
<form method="post" action="{{ url_for('login') }}">
    {% if csrf_token() %}
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <input type="hidden" name="next" value="{{ next }}">
    <label for="email">Email</label>
    <input id="email" name="email" type="email" autocomplete="username" value="{{ email or '' }}">
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="current-password">
    <button type="submit">Log in</button>
</form>
{% endblock %}
""")

TEMPL_403 = wrap("""
{% block body %}
<h2>Forbidden</h2>
<p>You are not allowed to do that.</p>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('bookmarks') }}">Back to your bookmarks</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
<h2>Internal Server Error</h2>
<p>Something broke on our side. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# Authentication
###############################################################################
def _store_session(data: dict) -> None:
    """Keep the platform's session token pair in the signed cookie."""
    csrf = session.get("csrf") or secrets.token_hex(16)
    session.clear()
    session.permanent = True
    session["access_token"] = data["access_token"]
    session["refresh_token"] = data.get("refresh_token")
    session["expires_at"] = int(
        data.get("expires_at") or time() + int(data.get("expires_in", 3600))
    )
    session["user_id"] = data["user"]["id"]
    session["email"] = data["user"].get("email", "")
    session["csrf"] = csrf


def current_user() -> dict | None:
    """
    The signed-in user as ``{"id", "email", "access_token"}``, or None.

    An expired access token is refreshed once; if that fails the session
    is dropped and the caller sees an anonymous visitor.
    """
    if not session.get("access_token") or not session.get("user_id"):
        return None

    if session.get("expires_at", 0) <= time():
        refresh = session.get("refresh_token")
        if not refresh:
            session.clear()
            return None
        try:
            _store_session(get_client().refresh_session(refresh))
        except (SupabaseError, KeyError, TypeError):
            app.logger.warning("Token refresh failed for %s", session.get("user_id"))
            session.clear()
            return None

    return {
        "id": session["user_id"],
        "email": session.get("email", ""),
        "access_token": session["access_token"],
    }


def _safe_next(target: str | None) -> str:
    """Only same-site relative paths are allowed as post-login targets."""
    if target:
        p = urlparse(target)
        if not p.scheme and not p.netloc and target.startswith("/") and not target.startswith("//"):
            return target
    return url_for("bookmarks")


def premium_required(view):
    """
    Gate for the bookmarks pages.

    • no session        → redirect to the login form
    • lookup failure    → the generic loading-error page
    • not premium       → 403 “Access denied”
    """

    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if user is None:
            return redirect(url_for("login", next=request.full_path.rstrip("?")))

        client = get_client(user["access_token"])
        try:
            premium = is_premium(client, user["id"])
        except SupabaseError:
            app.logger.exception("Premium lookup failed for %s", user["id"])
            return _render_bookmarks(error=True)
        if not premium:
            return render_template_string(TEMPL_DENIED, title="Access denied"), 403

        g.user, g.client = user, client
        return view(*args, **kwargs)

    return wrapped


@app.route("/login", methods=["GET", "POST"])
def login():
    nxt = _safe_next(request.values.get("next"))
    email = ""

    if request.method == "POST":
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        if not email or not password:
            flash("Email and password are required.")
        else:
            try:
                data = get_client().sign_in_with_password(email, password)
                _store_session(data)
            except (SupabaseError, KeyError, TypeError) as exc:
                app.logger.warning("Sign-in failed for %s: %s", email, exc)
                flash("Sign-in failed. Check your email and password.")
            else:
                return redirect(nxt)

    return render_template_string(TEMPL_LOGIN, title="Log in", next=nxt, email=email)


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("login"))


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return

    # anonymous POSTs (the login form) carry no session token yet
    if not session.get("access_token"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Views
###############################################################################
def _render_bookmarks(**ctx):
    ctx.setdefault("posts", [])
    ctx.setdefault("win", None)
    ctx.setdefault("viewer_id", getattr(g, "user", {}).get("id"))
    return render_template_string(TEMPL_BOOKMARKS, title="Bookmarks", **ctx)


@app.route("/")
def index():
    return redirect(url_for("bookmarks"))


@app.route("/bookmarks")
@premium_required
def bookmarks():
    user = g.user
    page = parse_page(request.args.get("page"))

    try:
        items = fetch_bookmarked_posts(g.client, user["id"])
    except SupabaseError:
        app.logger.exception("Loading bookmarks failed for %s", user["id"])
        return _render_bookmarks(error=True)

    posts, expired = partition_posts(items)
    if expired:
        flash("Some bookmarked posts had expired and were removed automatically.")
        app.logger.info("Removing expired bookmarks %s for %s", expired, user["id"])
        spawn(purge_expired_bookmarks, user["access_token"], user["id"], expired)

    if not posts:
        return _render_bookmarks(empty=True)

    win = page_window(len(posts), page, page_size())
    return _render_bookmarks(posts=posts[win["offset"] : win["end"]], win=win)


@app.route("/bookmarks/delete/<post_id>", methods=["GET", "POST"])
@premium_required
def delete_post(post_id):
    page = parse_page(request.args.get("page"))

    if request.method == "POST":
        try:
            g.client.rpc(DELETE_POST_RPC, {"forum_id_param": post_id})
        except SupabaseError:
            app.logger.warning("Deleting post %s failed", post_id, exc_info=True)
            flash("Failed to delete the post.")
        else:
            flash("Post deleted.")
        return redirect(url_for("bookmarks", page=page))

    return render_template_string(
        TEMPL_DELETE_POST, title="Delete post", post_id=post_id, page=page
    )


@app.errorhandler(403)
def forbidden(exc):
    return render_template_string(TEMPL_403, title="Forbidden"), 403


@app.errorhandler(404)
def not_found(exc):
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500, title="Error"), 500


###############################################################################
# CLI
###############################################################################
@app.cli.command("check")
def cli_check():
    """Check the database settings and that its REST endpoint answers."""
    try:
        get_client().ping()
    except SupabaseError as exc:
        click.secho(f"\n❌  {exc}\n", fg="red")
        raise SystemExit(1)

    click.secho("\n✅  Database reachable.", fg="green")
    click.echo(f"\n{app.config['SUPABASE_URL']}\n")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
