from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.aba.audit import record_event
from app.aba.db import db_session
from app.aba.mailer import send_email
from app.aba.models import User, utcnow
from app.aba.rbac import current_user, get_user_permissions, require_login
from app.aba.security import ensure_csrf_token, hash_token, new_reset_token
from app.aba.utils import error_response, json_payload

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
RESET_TOKEN_TTL = timedelta(hours=1)
RESET_REQUESTED_MESSAGE = "If an account with that email exists, a password reset link has been sent."
MIN_PASSWORD_LENGTH = 8


def _check_rate_limit(ip: str) -> bool:
    now = utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active or user.deleted_at is not None:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _me_payload(user: User) -> dict:
    data = user.to_dict()
    data["permissions"] = get_user_permissions(user)
    data["csrf_token"] = ensure_csrf_token()
    return data


@bp.post("/login")
def login():
    payload = json_payload()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return error_response("Too many login attempts. Please wait 5 minutes.", 429)

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if (
            not user
            or not user.is_active
            or user.deleted_at is not None
            or not check_password_hash(user.password_hash, password)
        ):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return error_response("Invalid credentials.", 401)

        session.clear()
        session["user_id"] = user.id
        session.permanent = True
        _login_attempts[ip].clear()
        user.last_login_at = utcnow()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return jsonify(_me_payload(user))
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return jsonify({"success": True})


@bp.get("/me")
@require_login
def me():
    return jsonify(_me_payload(current_user()))


@bp.get("/csrf")
def csrf():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.post("/change-password")
@require_login
def change_password():
    s = db_session()
    u = current_user()
    payload = json_payload()
    current_password = payload.get("current_password") or ""
    new_password = payload.get("new_password") or ""

    if not check_password_hash(u.password_hash, current_password):
        return error_response("Current password is incorrect.")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return error_response("Password must be at least 8 characters.")
    if new_password == current_password:
        return error_response("New password must be different from the current password.")

    u.password_hash = generate_password_hash(new_password)
    u.must_change_password = False
    record_event(s, actor=u, action="auth.password_change", entity_type="User", entity_id=str(u.id))
    s.commit()
    return jsonify({"success": True})


@bp.post("/set-new-password")
@require_login
def set_new_password():
    """First login after an invite or admin reset: replace the temporary password."""
    s = db_session()
    u = current_user()
    if not u.must_change_password:
        return error_response("Password change is not required.")
    new_password = json_payload().get("new_password") or ""
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return error_response("Password must be at least 8 characters.")
    if check_password_hash(u.password_hash, new_password):
        return error_response("New password must be different from the temporary password.")

    u.password_hash = generate_password_hash(new_password)
    u.must_change_password = False
    record_event(s, actor=u, action="auth.password_set", entity_type="User", entity_id=str(u.id))
    s.commit()
    return jsonify(_me_payload(u))


# ---------- Self-service reset ----------
@bp.post("/forgot-password")
def forgot_password():
    """
    Email a one-hour reset link. The response never reveals whether the address
    belongs to an account.
    """
    email = (json_payload().get("email") or "").strip().lower()
    ip = request.remote_addr or "unknown"
    if not email:
        return error_response("Email is required.")
    if _check_rate_limit(ip):
        return error_response("Too many attempts. Please wait 5 minutes.", 429)
    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or user.deleted_at is not None:
        return jsonify({"success": True, "message": RESET_REQUESTED_MESSAGE})

    raw, digest = new_reset_token()
    user.reset_token_hash = digest
    user.reset_token_expires_at = utcnow() + RESET_TOKEN_TTL
    record_event(s, actor=None, action="auth.password_reset_requested", entity_type="User", entity_id=str(user.id))
    s.commit()

    base_url = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
    ok, err = send_email(
        current_app.config,
        user.email,
        "Password reset",
        (
            f"Hello {user.name or user.email},\n\n"
            "A password reset was requested for your account. Use the link below within one hour:\n\n"
            f"{base_url}/reset-password?token={raw}\n\n"
            "If you did not ask for this, you can ignore this email.\n"
        ),
    )
    if not ok:
        current_app.logger.warning("Password reset email to user %s not sent: %s", user.id, err)
    return jsonify({"success": True, "message": RESET_REQUESTED_MESSAGE})


@bp.post("/reset-password")
def reset_password():
    payload = json_payload()
    token = (payload.get("token") or "").strip()
    password = payload.get("password") or ""
    if not token or not password:
        return error_response("Token and password are required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        return error_response("Password must be at least 8 characters.")

    s = db_session()
    user = s.query(User).filter(User.reset_token_hash == hash_token(token)).one_or_none()
    if (
        user is None
        or not user.is_active
        or user.deleted_at is not None
        or user.reset_token_expires_at is None
        or user.reset_token_expires_at < utcnow()
    ):
        return error_response("Invalid or expired reset token.")

    user.password_hash = generate_password_hash(password)
    user.reset_token_hash = None
    user.reset_token_expires_at = None
    user.must_change_password = False
    record_event(s, actor=user, action="auth.password_reset", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"success": True})
