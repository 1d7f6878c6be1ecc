from __future__ import annotations

from flask import Blueprint, abort, current_app, jsonify, request

from app.aba.db import db_session
from app.aba.modules.timesheets.models import Timesheet
from app.aba.rbac import current_user, require_permission
from app.aba.utils import error_response, json_payload, page_args, paginate

from .models import EmailQueueItem
from .service import EmailQueueError, bulk_delete, delete_item, send_batch

bp = Blueprint("email_queue", __name__)


def _ids(payload: dict) -> list[int]:
    ids = payload.get("ids")
    if not isinstance(ids, list) or not ids:
        abort(400, description="No items selected.")
    try:
        return [int(i) for i in ids]
    except (TypeError, ValueError):
        abort(400, description="Item ids must be integers.")


@bp.get("/email-queue")
@require_permission("email_queue.view")
def email_queue_list():
    s = db_session()
    page, limit = page_args(default_limit=50)
    status = (request.args.get("status") or "").strip().upper()

    q = s.query(EmailQueueItem).filter(EmailQueueItem.deleted_at.is_(None))
    if status:
        q = q.filter(EmailQueueItem.status == status)
    result = paginate(q.order_by(EmailQueueItem.queued_at.desc(), EmailQueueItem.id.desc()), page, limit)

    ts_by_id = {
        ts.id: ts
        for ts in s.query(Timesheet).filter(Timesheet.id.in_([i.entity_id for i in result["items"]])).all()
    }
    items = []
    for item in result["items"]:
        data = item.to_dict()
        ts = ts_by_id.get(item.entity_id)
        data["timesheet"] = ts.to_dict() if ts else None
        items.append(data)
    result["items"] = items
    return jsonify(result)


@bp.delete("/email-queue/<int:item_id>")
@require_permission("email_queue.send")
def email_queue_delete(item_id: int):
    s = db_session()
    item = s.get(EmailQueueItem, item_id)
    if not item or item.deleted_at is not None:
        abort(404)
    try:
        delete_item(s, item, current_user())
    except EmailQueueError as e:
        s.rollback()
        return error_response(str(e), 409)
    s.commit()
    return jsonify({"success": True})


@bp.post("/email-queue/bulk-delete")
@require_permission("email_queue.send")
def email_queue_bulk_delete():
    s = db_session()
    deleted = bulk_delete(s, _ids(json_payload()), current_user())
    s.commit()
    return jsonify({"deleted": deleted})


@bp.post("/email-queue/send-batch")
@require_permission("email_queue.send")
def email_queue_send_batch():
    s = db_session()
    try:
        result = send_batch(s, current_app.config, current_user())
    except EmailQueueError as e:
        return error_response(str(e))
    return jsonify(result), (200 if not result.get("error") else 502)


@bp.post("/email-queue/send-selected")
@require_permission("email_queue.send")
def email_queue_send_selected():
    s = db_session()
    ids = _ids(json_payload())
    try:
        result = send_batch(s, current_app.config, current_user(), item_ids=ids)
    except EmailQueueError as e:
        return error_response(str(e))
    return jsonify(result), (200 if not result.get("error") else 502)
