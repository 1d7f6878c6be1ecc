from __future__ import annotations

import logging

from flask import Blueprint, abort, current_app, jsonify, request

from app.aba.db import db_session
from app.aba.rbac import current_user, require_permission
from app.aba.security import bearer_token_matches
from app.aba.utils import error_response, json_payload, page_args, paginate, parse_date

from app.aba.modules.timesheets.visibility import get_timesheet_visibility_scope
from app.aba.modules.timesheets.models import Timesheet

from .billing_period import billing_period_from_dates, next_billing_period
from .generation import (
    generate_invoices_for_approved_timesheets,
    generate_invoices_for_timesheets,
    last_generation_run,
)
from .models import Invoice
from .service import (
    InvoiceStateError,
    approve_invoice,
    get_public_invoice,
    record_adjustment,
    record_payment,
    void_invoice,
)

logger = logging.getLogger(__name__)

bp = Blueprint("invoices", __name__)
cron_bp = Blueprint("cron", __name__)
public_bp = Blueprint("public", __name__)


def _get_invoice(s, invoice_id: int) -> Invoice:
    invoice = s.get(Invoice, invoice_id)
    if not invoice or invoice.deleted_at is not None:
        abort(404)
    return invoice


# ---------- List / detail ----------
@bp.get("/invoices")
@require_permission("invoices.view")
def invoices_list():
    s = db_session()
    page, limit = page_args()
    q = s.query(Invoice).filter(Invoice.deleted_at.is_(None))

    client_id = request.args.get("client_id", type=int)
    status = (request.args.get("status") or "").strip().upper()
    try:
        start_date = parse_date(request.args.get("start_date"))
        end_date = parse_date(request.args.get("end_date"))
    except ValueError:
        return error_response("Invalid date filter.")

    if client_id:
        q = q.filter(Invoice.client_id == client_id)
    if status:
        q = q.filter(Invoice.status == status)
    if start_date:
        q = q.filter(Invoice.end_date >= start_date)
    if end_date:
        q = q.filter(Invoice.start_date <= end_date)

    result = paginate(q.order_by(Invoice.created_at.desc(), Invoice.id.desc()), page, limit)
    result["items"] = [i.to_dict() for i in result["items"]]
    return jsonify(result)


@bp.get("/invoices/<int:invoice_id>")
@require_permission("invoices.view")
def invoices_detail(invoice_id: int):
    s = db_session()
    invoice = _get_invoice(s, invoice_id)
    return jsonify(invoice.to_dict(include_lines=True))


# ---------- Generation ----------
@bp.post("/invoices/generate")
@require_permission("invoices.generate")
def invoices_generate():
    s = db_session()
    payload = json_payload()
    period = None
    if payload.get("start_date") or payload.get("end_date"):
        try:
            start_date = parse_date(payload.get("start_date"))
            end_date = parse_date(payload.get("end_date"))
            if start_date is None or end_date is None:
                raise ValueError("Both start_date and end_date are required for a custom period.")
            period = billing_period_from_dates(start_date, end_date, current_app.config.get("BILLING_TIMEZONE"))
        except ValueError as e:
            return error_response(str(e))

    result = generate_invoices_for_approved_timesheets(
        s, period, actor=current_user(), config=current_app.config
    )
    return jsonify(result.to_dict()), (200 if result.success else 207)


@bp.get("/invoices/generation-status")
@require_permission("invoices.view")
def invoices_generation_status():
    s = db_session()
    run = last_generation_run(s)
    upcoming = next_billing_period(tz=current_app.config.get("BILLING_TIMEZONE"))
    return jsonify(
        {
            "last_run": run.to_dict() if run else None,
            "next_period": upcoming.to_dict(),
            "schedule": "Tuesdays 07:00 " + (current_app.config.get("BILLING_TIMEZONE") or "America/New_York"),
        }
    )


@bp.post("/timesheets/batch/generate-invoice")
@require_permission("invoices.generate")
def timesheets_batch_generate_invoice():
    s = db_session()
    u = current_user()
    payload = json_payload()
    ids = payload.get("timesheet_ids")
    if not isinstance(ids, list) or not ids:
        return error_response("No timesheets selected.")
    try:
        ids = [int(i) for i in ids]
    except (TypeError, ValueError):
        return error_response("timesheet_ids must be integers.")

    scope = get_timesheet_visibility_scope(s, u)
    visible_ids = [
        ts.id for ts in s.query(Timesheet).filter(Timesheet.id.in_(ids)).all() if scope.allows_user(ts.user_id)
    ]
    try:
        result = generate_invoices_for_timesheets(
            s,
            visible_ids,
            u,
            unit_minutes=int(current_app.config.get("INVOICE_UNIT_MINUTES") or 15),
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify(result.to_dict()), (201 if result.invoices_created else 200)


# ---------- Payments / adjustments ----------
@bp.post("/invoices/<int:invoice_id>/payments")
@require_permission("invoices.payments")
def invoices_add_payment(invoice_id: int):
    s = db_session()
    invoice = _get_invoice(s, invoice_id)
    try:
        payment = record_payment(s, invoice, json_payload(), current_user())
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify({"payment": payment.to_dict(), "invoice": invoice.to_dict()}), 201


@bp.post("/invoices/<int:invoice_id>/adjustments")
@require_permission("invoices.payments")
def invoices_add_adjustment(invoice_id: int):
    s = db_session()
    invoice = _get_invoice(s, invoice_id)
    try:
        adj = record_adjustment(s, invoice, json_payload(), current_user())
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify({"adjustment": adj.to_dict(), "invoice": invoice.to_dict()}), 201


# ---------- Approve / void ----------
@bp.post("/invoices/<int:invoice_id>/approve")
@require_permission("invoices.approve")
def invoices_approve(invoice_id: int):
    s = db_session()
    invoice = _get_invoice(s, invoice_id)
    try:
        approve_invoice(s, invoice, current_user(), int(current_app.config.get("INVOICE_VIEW_TOKEN_DAYS") or 30))
    except InvoiceStateError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    data = invoice.to_dict()
    data["view_token"] = invoice.view_token
    data["token_expires_at"] = invoice.token_expires_at.isoformat() if invoice.token_expires_at else None
    return jsonify(data)


@bp.delete("/invoices/<int:invoice_id>")
@require_permission("invoices.void")
def invoices_void(invoice_id: int):
    s = db_session()
    invoice = _get_invoice(s, invoice_id)
    reason = (json_payload().get("reason") or request.args.get("reason") or "").strip() or None
    try:
        released = void_invoice(s, invoice, current_user(), reason)
    except InvoiceStateError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify({"success": True, **released})


# ---------- Cron ----------
@cron_bp.post("/cron/invoice-generation")
def cron_invoice_generation():
    if not bearer_token_matches(request, current_app.config.get("CRON_SECRET") or ""):
        logger.warning("Rejected cron call without a valid CRON_SECRET (ip=%s)", request.remote_addr)
        return error_response("Unauthorized", 401)
    s = db_session()
    result = generate_invoices_for_approved_timesheets(s, actor=None, config=current_app.config)
    return jsonify(result.to_dict()), (200 if result.success else 500)


# ---------- Public view ----------
@public_bp.get("/public/invoice/<int:invoice_id>")
def public_invoice(invoice_id: int):
    s = db_session()
    invoice = get_public_invoice(s, invoice_id, request.args.get("token"))
    if invoice is None:
        abort(404)
    data = invoice.to_dict(include_lines=True)
    data.pop("created_by", None)
    return jsonify(data)
