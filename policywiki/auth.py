import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps

from flask import (
    Blueprint,
    abort,
    current_app,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash

from policywiki.audit import log_action
from policywiki.models import Session, SessionLocal, User, UserStatus, get_session, utcnow
from policywiki.permissions import EMPTY, get_user_permissions

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)

SESSION_COOKIE = "session_id"


@dataclass(frozen=True)
class CurrentUser:
    """Snapshot of the signed-in user, detached from any database session."""

    id: int
    email: str
    name: str
    status: str

    @classmethod
    def from_model(cls, user: User) -> "CurrentUser":
        return cls(id=user.id, email=user.email, name=user.name, status=user.status)


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return check_password_hash(password_hash, password)
    except ValueError:
        # Unknown hash format, e.g. a hash imported from another system.
        return False


def generate_session_id() -> str:
    return secrets.token_hex(32)


def session_ttl() -> timedelta:
    return timedelta(minutes=current_app.config.get("SESSION_TTL_MINUTES", 60))


def create_session(db, user_id: int, ttl: timedelta | None = None, now: datetime | None = None) -> str:
    """Issue a new session for ``user_id`` and return its opaque id."""
    now = now or utcnow()
    ttl = ttl or session_ttl()
    session_id = generate_session_id()
    db.add(
        Session(
            id=session_id,
            user_id=user_id,
            expires_at=now + ttl,
            created_at=now,
            last_activity=now,
        )
    )
    db.commit()
    return session_id


def get_session_record(
    db, session_id: str, now: datetime | None = None, touch: bool = True
) -> Session | None:
    """Return the live session for ``session_id`` and record the activity.

    Sessions whose expiry has passed are treated as absent; they are purged
    later by :func:`clean_expired_sessions`.  Only ``last_activity`` is
    touched, the expiry never moves.  ``touch=False`` leaves the row as is.
    """
    if not session_id:
        return None
    now = now or utcnow()
    record = (
        db.query(Session)
        .filter(Session.id == session_id, Session.expires_at > now)
        .one_or_none()
    )
    if record is None:
        return None
    if touch:
        record.last_activity = now
        db.commit()
    return record


def delete_session(db, session_id: str) -> None:
    db.query(Session).filter(Session.id == session_id).delete(synchronize_session=False)
    db.commit()


def clean_expired_sessions(db, now: datetime | None = None) -> int:
    now = now or utcnow()
    removed = (
        db.query(Session)
        .filter(Session.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return removed


def get_user_from_session(db, session_id: str, now: datetime | None = None) -> User | None:
    """Return the active user owning ``session_id``.

    Activity is only recorded once the user is known to be active.
    """
    now = now or utcnow()
    record = get_session_record(db, session_id, now=now, touch=False)
    if record is None:
        return None
    user = db.get(User, record.user_id)
    if user is None or user.status != UserStatus.ACTIVE.value:
        return None
    record.last_activity = now
    db.commit()
    return user


def load_current_user():
    """Resolve the session cookie into ``g.user`` and ``g.permissions``."""
    g.user = None
    g.permissions = EMPTY
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        return
    db = SessionLocal.session_factory()
    try:
        user = get_user_from_session(db, session_id)
        if user is None:
            return
        g.user = CurrentUser.from_model(user)
        g.session_id = session_id
        g.permissions = get_user_permissions(user.id, db)
    finally:
        db.close()


def wants_json() -> bool:
    if request.path.startswith("/api/") or request.is_json:
        return True
    return request.accept_mimetypes.best == "application/json"


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if g.get("user") is None:
            if wants_json():
                return jsonify(error="Authentication required"), 401
            return redirect(url_for("auth.login", next=request.path))
        return view(*args, **kwargs)

    return wrapped


def permission_required(*required, redirect_to=None):
    """Allow the view when the user holds any of ``required``.

    Without a session the user is sent to the login page.  A signed-in user
    lacking the permission gets a JSON 403 on API routes, a redirect to
    ``redirect_to`` when given, and a plain 403 otherwise.
    """

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = g.get("user")
            if user is None:
                if wants_json():
                    return jsonify(error="Authentication required"), 401
                return redirect(url_for("auth.login", next=request.path))
            if not g.permissions.allows_any(*required):
                logger.warning(
                    "Permission denied: path=%s user=%s required=%s",
                    request.path,
                    user.id,
                    [getattr(p, "value", p) for p in required],
                )
                if wants_json():
                    return jsonify(error="Insufficient permissions"), 403
                if redirect_to:
                    return redirect(url_for(redirect_to))
                abort(403)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def init_app(app):
    """Initialize authentication config."""
    app.config["SESSION_TTL_MINUTES"] = int(os.environ.get("SESSION_TTL_MINUTES", 60))
    app.config["SESSION_ID_COOKIE_SECURE"] = (
        os.environ.get("SESSION_COOKIE_SECURE", "true").lower() == "true"
    )
    app.before_request(load_current_user)


def _set_session_cookie(resp, session_id: str):
    resp.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=int(session_ttl().total_seconds()),
        path="/",
        httponly=True,
        secure=current_app.config["SESSION_ID_COOKIE_SECURE"],
        samesite="Lax",
    )
    return resp


def _safe_next(target: str | None) -> str:
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return url_for("public.home")


@auth_bp.route("/login")
def login():
    """Render the login form."""
    if g.get("user") is not None:
        return redirect(url_for("public.home"))
    return render_template("login.html", next=request.args.get("next", ""))


@auth_bp.post("/api/auth/login")
def api_login():
    """Authenticate with email and password and issue a session cookie."""
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    as_json = wants_json() and not request.form

    if not email or not password:
        if as_json:
            return jsonify(error="Email and password are required"), 400
        return render_template("login.html", error="Email and password are required"), 400

    db = get_session()
    try:
        user = (
            db.query(User)
            .filter(User.email == email, User.status == UserStatus.ACTIVE.value)
            .first()
        )
        if user is None or not verify_password(password, user.password_hash):
            logger.info("Failed login for %s", email)
            if as_json:
                return jsonify(error="Invalid email or password"), 401
            return render_template("login.html", error="Invalid email or password"), 401

        clean_expired_sessions(db)
        session_id = create_session(db, user.id)
        user.last_login_at = utcnow()
        db.commit()
        user_id, user_name = user.id, user.name
    finally:
        db.close()

    log_action(user_id, "login", "user", user_id, changes={"success": True})
    logger.info("User %s logged in", user_id)

    if as_json:
        resp = jsonify(status="ok", user={"id": user_id, "email": email, "name": user_name})
    else:
        resp = redirect(_safe_next(data.get("next")))
    return _set_session_cookie(resp, session_id)


@auth_bp.route("/api/auth/logout", methods=["GET", "POST"])
def api_logout():
    """Delete the server-side session and clear the cookie."""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        db = get_session()
        try:
            delete_session(db, session_id)
        finally:
            db.close()
        user = g.get("user")
        if user is not None:
            log_action(user.id, "logout", "user", user.id)
    if request.method == "POST" and wants_json():
        resp = jsonify(status="ok")
    else:
        resp = redirect(url_for("public.home"))
    resp.delete_cookie(SESSION_COOKIE, path="/")
    return resp


@auth_bp.get("/api/auth/me")
@login_required
def api_me():
    user = g.user
    return jsonify(
        id=user.id,
        email=user.email,
        name=user.name,
        status=user.status,
        permissions=g.permissions.to_list(),
    )
