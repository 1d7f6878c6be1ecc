from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request
from sqlalchemy import or_

from app.aba.constants import UNIT_MINUTES
from app.aba.db import db_session
from app.aba.modules.directory.models import Client, Provider
from app.aba.rbac import current_user, require_permission, user_has_permission
from app.aba.utils import error_response, json_payload, page_args, paginate, parse_bool, parse_date

from .models import Timesheet
from .service import (
    AlreadyQueuedError,
    OverlapConflictError,
    TimesheetStateError,
    approve_timesheet,
    archive_timesheets,
    create_timesheet,
    delete_timesheet,
    detect_overlaps,
    reject_timesheet,
    submit_timesheet,
    update_timesheet,
    validate_timesheet_payload,
)
from .visibility import apply_visibility, can_view_timesheet, get_timesheet_visibility_scope

bp = Blueprint("timesheets", __name__)


def _default_tz() -> str:
    return current_app.config.get("BILLING_TIMEZONE") or "America/New_York"


def _unit_minutes() -> int:
    return int(current_app.config.get("INVOICE_UNIT_MINUTES") or UNIT_MINUTES)


def _get_visible_timesheet(s, timesheet_id: int) -> Timesheet:
    ts = s.get(Timesheet, timesheet_id)
    if not ts or ts.deleted_at is not None:
        abort(404)
    scope = get_timesheet_visibility_scope(s, current_user())
    if not can_view_timesheet(scope, ts):
        abort(404)
    return ts


def _overlap_response(e: OverlapConflictError):
    return error_response(str(e), 400, code="OVERLAP_CONFLICT", conflicts=e.conflicts)


def _ids_from_payload(payload: dict) -> list[int]:
    ids = payload.get("timesheet_ids") or payload.get("ids")
    if not isinstance(ids, list) or not ids:
        abort(400, description="No timesheets selected.")
    try:
        return [int(i) for i in ids]
    except (TypeError, ValueError):
        abort(400, description="Timesheet ids must be integers.")


# ---------- List ----------
@bp.get("/timesheets")
@require_permission("timesheets.view")
def timesheets_list():
    s = db_session()
    u = current_user()
    page, limit = page_args()

    try:
        start_date = parse_date(request.args.get("start_date"))
        end_date = parse_date(request.args.get("end_date"))
    except ValueError:
        return error_response("Invalid date filter.")
    search = (request.args.get("search") or "").strip()
    status = (request.args.get("status") or "").strip().upper()
    client_id = request.args.get("client_id", type=int)
    user_id = request.args.get("user_id", type=int)
    is_bcba = parse_bool(request.args.get("is_bcba"))
    archived = parse_bool(request.args.get("archived"), False)

    q = s.query(Timesheet).filter(Timesheet.deleted_at.is_(None))
    scope = get_timesheet_visibility_scope(s, u)
    q = apply_visibility(q, scope, user_id)

    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Timesheet.client.has(Client.name.ilike(like)),
                Timesheet.provider.has(Provider.name.ilike(like)),
                Timesheet.bcba.has(Provider.name.ilike(like)),
                Timesheet.timesheet_number.ilike(like),
            )
        )
    if status:
        q = q.filter(Timesheet.status == status)
    if client_id:
        q = q.filter(Timesheet.client_id == client_id)
    if is_bcba is not None:
        q = q.filter(Timesheet.is_bcba.is_(is_bcba))
    if start_date:
        q = q.filter(Timesheet.end_date >= start_date)
    if end_date:
        q = q.filter(Timesheet.start_date <= end_date)

    # Archived view: invoiced or archived. Active view: neither.
    if archived:
        q = q.filter(or_(Timesheet.archived.is_(True), Timesheet.invoice_id.isnot(None)))
    else:
        q = q.filter(Timesheet.archived.is_(False), Timesheet.invoice_id.is_(None))

    result = paginate(q.order_by(Timesheet.start_date.desc(), Timesheet.id.desc()), page, limit)
    result["items"] = [ts.to_dict() for ts in result["items"]]
    return jsonify(result)


# ---------- Create ----------
@bp.post("/timesheets")
@require_permission("timesheets.create")
def timesheets_create():
    s = db_session()
    try:
        ts = create_timesheet(
            s, json_payload(), current_user(), default_timezone=_default_tz(), unit_minutes=_unit_minutes()
        )
    except OverlapConflictError as e:
        s.rollback()
        return _overlap_response(e)
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify(ts.to_dict(include_entries=True)), 201


@bp.post("/timesheets/check-overlaps")
@require_permission("timesheets.create")
def timesheets_check_overlaps():
    s = db_session()
    payload = json_payload()
    try:
        data = validate_timesheet_payload(s, payload, default_timezone=_default_tz())
    except ValueError as e:
        return error_response(str(e))
    if data["is_bcba"]:
        return jsonify({"has_overlaps": False, "conflicts": []})
    exclude = payload.get("exclude_timesheet_id")
    try:
        exclude_id = int(exclude) if exclude not in (None, "") else None
    except (TypeError, ValueError):
        return error_response("exclude_timesheet_id must be an integer.")
    conflicts = detect_overlaps(
        s,
        provider=data["provider"],
        client=data["client"],
        entries=data["entries"],
        exclude_timesheet_id=exclude_id,
    )
    return jsonify({"has_overlaps": bool(conflicts), "conflicts": conflicts})


# ---------- Detail / update / delete ----------
@bp.get("/timesheets/<int:timesheet_id>")
@require_permission("timesheets.view")
def timesheets_detail(timesheet_id: int):
    s = db_session()
    ts = _get_visible_timesheet(s, timesheet_id)
    return jsonify(ts.to_dict(include_entries=True))


@bp.put("/timesheets/<int:timesheet_id>")
@require_permission("timesheets.create")
def timesheets_update(timesheet_id: int):
    s = db_session()
    ts = _get_visible_timesheet(s, timesheet_id)
    try:
        update_timesheet(s, ts, json_payload(), current_user(), unit_minutes=_unit_minutes())
    except OverlapConflictError as e:
        s.rollback()
        return _overlap_response(e)
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify(ts.to_dict(include_entries=True))


@bp.delete("/timesheets/<int:timesheet_id>")
@require_permission("timesheets.delete")
def timesheets_delete(timesheet_id: int):
    s = db_session()
    ts = _get_visible_timesheet(s, timesheet_id)
    try:
        delete_timesheet(s, ts, current_user())
    except TimesheetStateError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify({"success": True})


# ---------- Workflow ----------
@bp.post("/timesheets/<int:timesheet_id>/submit")
@require_permission("timesheets.submit")
def timesheets_submit(timesheet_id: int):
    s = db_session()
    ts = _get_visible_timesheet(s, timesheet_id)
    try:
        submit_timesheet(s, ts, current_user(), current_app.config)
    except PermissionError as e:
        s.rollback()
        return error_response(str(e), 403)
    except TimesheetStateError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify(ts.to_dict())


@bp.post("/timesheets/<int:timesheet_id>/approve")
@require_permission("timesheets.view")
def timesheets_approve(timesheet_id: int):
    s = db_session()
    u = current_user()
    ts = _get_visible_timesheet(s, timesheet_id)
    needed = "bcba_timesheets.approve" if ts.is_bcba else "timesheets.approve"
    if not user_has_permission(u, needed):
        g.missing_permission = needed
        abort(403)
    try:
        item = approve_timesheet(s, ts, u)
    except AlreadyQueuedError as e:
        s.rollback()
        return error_response(str(e), 409)
    except TimesheetStateError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify({"timesheet": ts.to_dict(), "email_queue_item": item.to_dict()})


@bp.post("/timesheets/<int:timesheet_id>/reject")
@require_permission("timesheets.view")
def timesheets_reject(timesheet_id: int):
    s = db_session()
    u = current_user()
    ts = _get_visible_timesheet(s, timesheet_id)
    needed = "bcba_timesheets.approve" if ts.is_bcba else "timesheets.approve"
    if not user_has_permission(u, needed):
        g.missing_permission = needed
        abort(403)
    try:
        reject_timesheet(s, ts, u, json_payload().get("reason"))
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify(ts.to_dict())


@bp.post("/timesheets/batch/archive")
@require_permission("timesheets.archive")
def timesheets_batch_archive():
    s = db_session()
    u = current_user()
    ids = _ids_from_payload(json_payload())
    scope = get_timesheet_visibility_scope(s, u)
    result = archive_timesheets(s, ids, u, scope)
    s.commit()
    return jsonify(result)
