import re
import secrets
from datetime import datetime, time, timedelta

from flask import Blueprint, abort, current_app, jsonify, request
from sqlalchemy import delete
from werkzeug.security import generate_password_hash

from app.aba.audit import diff_changes, record_event
from app.aba.constants import PERMISSIONS
from app.aba.db import db_session
from app.aba.mailer import send_email
from app.aba.models import AuditEvent, Permission, Role, RoleTimesheetVisibility, User, utcnow
from app.aba.modules.invoices.models import Invoice, InvoiceEntry
from app.aba.modules.timesheets.models import Timesheet
from app.aba.modules.timesheets.visibility import can_view_timesheet, get_timesheet_visibility_scope
from app.aba.rbac import current_user, get_user_permissions, require_login, require_permission, user_has_permission
from app.aba.security import new_reset_token
from app.aba.utils import error_response, is_valid_email, json_payload, parse_bool, parse_date

bp = Blueprint("admin", __name__)

_KNOWN_PERMISSIONS = {key for key, _name in PERMISSIONS}
DASHBOARD_SECTIONS = tuple(key.split(".", 1)[1] for key in sorted(_KNOWN_PERMISSIONS) if key.startswith("dashboard."))
INVITE_TTL_HOURS = 72


def _int_list(value, field: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        abort(400, description=f"{field} must be a list.")
    try:
        return [int(v) for v in value]
    except (TypeError, ValueError):
        abort(400, description=f"{field} must contain integers.")


def _validate_password(password: str) -> str | None:
    if not password:
        return "Password is required."
    if len(password) < 8:
        return "Password must be at least 8 characters."
    return None


# ---------- Current user ----------
@bp.get("/user/permissions")
@require_login
def user_permissions():
    s = db_session()
    u = current_user()
    scope = get_timesheet_visibility_scope(s, u)
    return jsonify(
        {
            "user_id": u.id,
            "is_admin": u.is_admin,
            "permissions": get_user_permissions(u),
            "timesheet_visibility": scope.to_dict(),
        }
    )


# ---------- Users ----------
@bp.get("/users")
@require_permission("users.view")
def users_list():
    s = db_session()
    q = s.query(User).filter(User.deleted_at.is_(None))
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(User.email.like(like) | User.name.ilike(like))
    users = q.order_by(User.email.asc()).all()
    return jsonify({"items": [u.to_dict() for u in users], "total": len(users)})


@bp.post("/users")
@require_permission("users.manage")
def users_create():
    s = db_session()
    u = current_user()
    payload = json_payload()

    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    role_ids = _int_list(payload.get("role_ids"), "role_ids")

    errors = []
    if not email:
        errors.append("Email is required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")
    password_error = _validate_password(password)
    if password_error:
        errors.append(password_error)
    if errors:
        return error_response(" ".join(errors), errors=errors)

    new_user = User(
        email=email,
        name=(payload.get("name") or "").strip() or None,
        password_hash=generate_password_hash(password),
        is_active=True,
    )
    s.add(new_user)
    s.flush()

    if role_ids:
        for role in s.query(Role).filter(Role.id.in_(role_ids)).all():
            new_user.roles.append(role)

    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "roles": [r.key for r in new_user.roles]},
    )
    s.commit()
    return jsonify(new_user.to_dict()), 201


@bp.get("/users/<int:user_id>")
@require_permission("users.view")
def users_detail(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user or user.deleted_at is not None:
        abort(404)
    data = user.to_dict()
    data["permissions"] = get_user_permissions(user)
    return jsonify(data)


@bp.put("/users/<int:user_id>")
@require_permission("users.manage")
def users_update(user_id: int):
    s = db_session()
    u = current_user()
    user = s.get(User, user_id)
    if not user or user.deleted_at is not None:
        abort(404)
    if user.id == u.id:
        return error_response("You cannot modify your own account here.")

    payload = json_payload()
    before = {"is_active": user.is_active, "name": user.name, "roles": [r.key for r in user.roles]}

    if "is_active" in payload:
        user.is_active = bool(parse_bool(payload.get("is_active"), user.is_active))
    if "name" in payload:
        user.name = (payload.get("name") or "").strip() or None
    if "role_ids" in payload:
        role_ids = _int_list(payload.get("role_ids"), "role_ids")
        user.roles.clear()
        if role_ids:
            for role in s.query(Role).filter(Role.id.in_(role_ids)).all():
                user.roles.append(role)

    after = {"is_active": user.is_active, "name": user.name, "roles": [r.key for r in user.roles]}
    record_event(
        s,
        actor=u,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email, "changes": diff_changes(before, after)},
    )
    s.commit()
    return jsonify(user.to_dict())


@bp.post("/users/<int:user_id>/reset-password")
@require_permission("users.manage")
def users_reset_password(user_id: int):
    s = db_session()
    u = current_user()
    user = s.get(User, user_id)
    if not user or user.deleted_at is not None:
        abort(404)

    password = json_payload().get("password") or ""
    password_error = _validate_password(password)
    if password_error:
        return error_response(password_error)

    user.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor=u,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email, "reset_by": u.email},
    )
    s.commit()
    return jsonify({"success": True})


@bp.post("/users/<int:user_id>/resend-invite")
@require_permission("users.manage")
def users_resend_invite(user_id: int):
    """
    Issue a fresh temporary password (changed on first login) plus a set-password link
    valid for three days, and email both to the user.
    """
    s = db_session()
    u = current_user()
    user = s.get(User, user_id)
    if not user or user.deleted_at is not None:
        abort(404)
    if not user.is_active:
        return error_response("Cannot invite an inactive user.")

    temporary_password = secrets.token_urlsafe(9)
    raw, digest = new_reset_token()
    user.password_hash = generate_password_hash(temporary_password)
    user.must_change_password = True
    user.reset_token_hash = digest
    user.reset_token_expires_at = utcnow() + timedelta(hours=INVITE_TTL_HOURS)
    record_event(
        s,
        actor=u,
        action="user.invite_resent",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email},
    )
    s.commit()

    base_url = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
    ok, err = send_email(
        current_app.config,
        user.email,
        "Your account invitation",
        (
            f"Hello {user.name or user.email},\n\n"
            f"An account has been set up for you. Sign in at {base_url}/login with:\n\n"
            f"  Email: {user.email}\n"
            f"  Temporary password: {temporary_password}\n\n"
            f"You will be asked to choose a new password. Or set one directly within {INVITE_TTL_HOURS} hours:\n"
            f"{base_url}/reset-password?token={raw}\n"
        ),
    )
    if not ok:
        current_app.logger.warning("Invite email to user %s not sent: %s", user.id, err)
        # The admin has to hand the password over themselves.
        return jsonify({"success": True, "email_sent": False, "error": err, "temporary_password": temporary_password})
    return jsonify({"success": True, "email_sent": True})


@bp.delete("/users/<int:user_id>")
@require_permission("users.manage")
def users_delete(user_id: int):
    s = db_session()
    u = current_user()
    user = s.get(User, user_id)
    if not user or user.deleted_at is not None:
        abort(404)
    if user.id == u.id:
        return error_response("You cannot delete your own account.")
    user.deleted_at = utcnow()
    user.is_active = False
    record_event(s, actor=u, action="user.delete", entity_type="User", entity_id=str(user.id), metadata={"email": user.email})
    s.commit()
    return jsonify({"success": True})


# ---------- Roles ----------
def _apply_permissions(s, role: Role, keys) -> list[str]:
    if not isinstance(keys, list):
        abort(400, description="permissions must be a list of keys.")
    unknown = sorted(set(keys) - _KNOWN_PERMISSIONS)
    if unknown:
        abort(400, description=f"Unknown permissions: {', '.join(unknown)}")
    perms = s.query(Permission).filter(Permission.key.in_(keys)).all() if keys else []
    role.permissions = perms
    return sorted(p.key for p in perms)


@bp.get("/roles")
@require_permission("roles.view")
def roles_list():
    s = db_session()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return jsonify(
        {
            "items": [r.to_dict() for r in roles],
            "available_permissions": [{"key": k, "name": n} for k, n in PERMISSIONS],
        }
    )


@bp.post("/roles")
@require_permission("roles.manage")
def roles_create():
    s = db_session()
    u = current_user()
    payload = json_payload()
    key = (payload.get("key") or "").strip().lower()
    name = (payload.get("name") or "").strip()
    if not key or not name:
        return error_response("Role key and name are required.")
    if s.query(Role).filter(Role.key == key).one_or_none():
        return error_response("A role with this key already exists.", 409)

    role = Role(key=key, name=name, is_admin=bool(parse_bool(payload.get("is_admin"), False)))
    s.add(role)
    keys = _apply_permissions(s, role, payload.get("permissions") or [])
    s.flush()
    record_event(
        s,
        actor=u,
        action="role.create",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"key": key, "is_admin": role.is_admin, "permissions": keys},
    )
    s.commit()
    return jsonify(role.to_dict()), 201


@bp.put("/roles/<int:role_id>")
@require_permission("roles.manage")
def roles_update(role_id: int):
    s = db_session()
    u = current_user()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    payload = json_payload()
    before = {"name": role.name, "is_admin": role.is_admin, "permissions": sorted(p.key for p in role.permissions)}

    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            return error_response("Role name cannot be empty.")
        role.name = name
    if "is_admin" in payload:
        role.is_admin = bool(parse_bool(payload.get("is_admin"), role.is_admin))
    if "permissions" in payload:
        _apply_permissions(s, role, payload.get("permissions"))

    after = {"name": role.name, "is_admin": role.is_admin, "permissions": sorted(p.key for p in role.permissions)}
    record_event(
        s,
        actor=u,
        action="role.update",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"key": role.key, "changes": diff_changes(before, after)},
    )
    s.commit()
    return jsonify(role.to_dict())


@bp.delete("/roles/<int:role_id>")
@require_permission("roles.manage")
def roles_delete(role_id: int):
    s = db_session()
    u = current_user()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    if role.users:
        return error_response("Cannot delete a role that is assigned to users.", 409)
    record_event(s, actor=u, action="role.delete", entity_type="Role", entity_id=str(role.id), metadata={"key": role.key})
    s.delete(role)
    s.commit()
    return jsonify({"success": True})


@bp.put("/roles/<int:role_id>/timesheet-visibility")
@require_permission("roles.manage")
def roles_timesheet_visibility(role_id: int):
    """Replace the set of users whose timesheets this role may see (with timesheets.view_selected)."""
    s = db_session()
    u = current_user()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    user_ids = sorted(set(_int_list(json_payload().get("user_ids"), "user_ids")))
    found = {uid for (uid,) in s.query(User.id).filter(User.id.in_(user_ids)).all()} if user_ids else set()
    missing = [uid for uid in user_ids if uid not in found]
    if missing:
        return error_response(f"Unknown users: {', '.join(str(m) for m in missing)}")

    before = sorted(v.id for v in role.visible_users)
    s.execute(delete(RoleTimesheetVisibility).where(RoleTimesheetVisibility.role_id == role.id))
    for uid in user_ids:
        s.add(RoleTimesheetVisibility(role_id=role.id, user_id=uid))
    record_event(
        s,
        actor=u,
        action="role.timesheet_visibility",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"changes": diff_changes({"user_ids": before}, {"user_ids": user_ids})},
    )
    s.commit()
    s.expire(role, ["visible_users"])
    return jsonify(role.to_dict())


def _dashboard_sections(role: Role) -> dict[str, bool]:
    keys = {p.key for p in role.permissions}
    return {section: role.is_admin or f"dashboard.{section}" in keys for section in DASHBOARD_SECTIONS}


@bp.get("/roles/<int:role_id>/dashboard-visibility")
@require_permission("roles.view")
def roles_dashboard_visibility(role_id: int):
    s = db_session()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    return jsonify({"role_id": role.id, "sections": _dashboard_sections(role)})


@bp.put("/roles/<int:role_id>/dashboard-visibility")
@require_permission("roles.manage")
def roles_dashboard_visibility_update(role_id: int):
    """Toggle dashboard sections; each maps to a `dashboard.<section>` permission on the role."""
    s = db_session()
    u = current_user()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    sections = json_payload().get("sections")
    if not isinstance(sections, dict):
        return error_response("sections must be an object of section name to true/false.")
    unknown = sorted(set(sections) - set(DASHBOARD_SECTIONS))
    if unknown:
        return error_response(f"Unknown dashboard sections: {', '.join(unknown)}")

    before = _dashboard_sections(role)
    keys = {p.key for p in role.permissions}
    for section, visible in sections.items():
        key = f"dashboard.{section}"
        if parse_bool(visible, False):
            keys.add(key)
        else:
            keys.discard(key)
    _apply_permissions(s, role, sorted(keys))
    after = _dashboard_sections(role)
    record_event(
        s,
        actor=u,
        action="role.dashboard_visibility",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"key": role.key, "changes": diff_changes(before, after)},
    )
    s.commit()
    return jsonify({"role_id": role.id, "sections": after})


# ---------- Audit ----------
@bp.get("/admin/audit")
@require_permission("admin.view")
def audit_list():
    """
    Latest 200 audit events, filtered by:
    - action (contains)
    - actor_email (contains)
    - entity_type / entity_id (exact)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    try:
        date_from = parse_date(request.args.get("date_from"))
        date_to = parse_date(request.args.get("date_to"))
    except ValueError:
        return error_response("Dates must be YYYY-MM-DD.")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return jsonify({"items": [e.to_dict() for e in events], "total": len(events)})


# ---------- Activity feed ----------
# Sign-ins and password changes stay in the audit trail but not in the feed.
_ACTIVITY_HIDDEN_PREFIX = "auth."


def _activity_query(s, user: User):
    return s.query(AuditEvent).filter(
        ~AuditEvent.action.startswith(_ACTIVITY_HIDDEN_PREFIX),
        (AuditEvent.actor_user_id.is_(None)) | (AuditEvent.actor_user_id != user.id),
    )


@bp.get("/admin/activity")
@require_permission("admin.view")
def activity_list():
    s = db_session()
    u = current_user()
    try:
        limit = min(max(int(request.args.get("limit") or 20), 1), 100)
    except ValueError:
        return error_response("limit must be an integer.")
    events = _activity_query(s, u).order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
    seen = u.last_seen_activity_at
    items = []
    for e in events:
        data = e.to_dict()
        data["unread"] = seen is None or e.created_at > seen
        items.append(data)
    return jsonify({"items": items, "last_seen_at": seen.isoformat() if seen else None})


@bp.get("/admin/activity/unread-count")
@require_permission("admin.view")
def activity_unread_count():
    s = db_session()
    u = current_user()
    q = _activity_query(s, u)
    if u.last_seen_activity_at is not None:
        q = q.filter(AuditEvent.created_at > u.last_seen_activity_at)
    return jsonify({"count": q.count()})


@bp.post("/admin/activity/mark-seen")
@require_permission("admin.view")
def activity_mark_seen():
    s = db_session()
    u = current_user()
    u.last_seen_activity_at = utcnow()
    s.commit()
    return jsonify({"success": True, "last_seen_at": u.last_seen_activity_at.isoformat()})


# ---------- Lookup by number ----------
_TIMESHEET_NUMBER = re.compile(r"^(?:T|BT)-\d+$")
_INVOICE_NUMBER = re.compile(r"^INV-\d{4}-\d+$")


@bp.get("/search")
@require_login
def search():
    """Jump to a timesheet (T-1001, BT-1002) or invoice (INV-2025-00001) with its linked records."""
    s = db_session()
    u = current_user()
    q = (request.args.get("q") or "").strip().upper()
    if not q:
        return error_response("Search query is required.")
    scope = get_timesheet_visibility_scope(s, u)
    can_see_invoices = user_has_permission(u, "invoices.view")

    if _TIMESHEET_NUMBER.match(q):
        ts = s.query(Timesheet).filter(Timesheet.timesheet_number == q, Timesheet.deleted_at.is_(None)).one_or_none()
        if ts is None or not can_view_timesheet(scope, ts):
            return error_response(f"Timesheet {q} not found.", 404)
        invoice = None
        if can_see_invoices and ts.invoice_id is not None:
            linked = s.get(Invoice, ts.invoice_id)
            if linked is not None and linked.deleted_at is None:
                invoice = linked.to_dict()
        return jsonify({"type": "timesheet", "timesheet": ts.to_dict(include_entries=True), "invoice": invoice})

    if _INVOICE_NUMBER.match(q):
        if not can_see_invoices:
            return error_response("You do not have permission to view invoices.", 403)
        invoice = s.query(Invoice).filter(Invoice.invoice_number == q, Invoice.deleted_at.is_(None)).one_or_none()
        if invoice is None:
            return error_response(f"Invoice {q} not found.", 404)
        timesheets = (
            s.query(Timesheet)
            .filter(Timesheet.id.in_(s.query(InvoiceEntry.timesheet_id).filter(InvoiceEntry.invoice_id == invoice.id)))
            .order_by(Timesheet.start_date, Timesheet.id)
            .all()
        )
        return jsonify(
            {
                "type": "invoice",
                "invoice": invoice.to_dict(include_lines=True),
                "timesheets": [ts.to_dict() for ts in timesheets if can_view_timesheet(scope, ts)],
            }
        )

    return error_response("Invalid search format. Use T-1001, BT-1002, or INV-2026-00001")
