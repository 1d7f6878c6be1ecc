"""
Batch email sending for approved timesheets.

Flow: lock QUEUED items to SENDING (committed), send one plain-text summary email,
then mark items SENT and their timesheets EMAILED, or FAILED with the error.
"""
from __future__ import annotations

import logging
import secrets
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.aba.audit import record_event
from app.aba.constants import EMAIL_FAILED, EMAIL_QUEUED, EMAIL_SENDING, EMAIL_SENT, TIMESHEET_EMAILED
from app.aba.mailer import send_email
from app.aba.models import utcnow
from app.aba.modules.timesheets.models import Timesheet

from .models import EmailQueueItem

if TYPE_CHECKING:
    from app.aba.models import User

logger = logging.getLogger(__name__)


class EmailQueueError(ValueError):
    pass


def new_batch_id() -> str:
    return f"BATCH-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}"


def _hours(minutes: int) -> str:
    return f"{minutes / 60:.2f}"


def build_batch_email(timesheets: list[Timesheet], batch_date: str) -> tuple[str, str]:
    """(subject, body) listing one line per timesheet."""
    subject = f"Approved Timesheets - {batch_date} ({len(timesheets)})"
    lines = [f"The following {len(timesheets)} timesheet(s) were approved:", ""]
    for ts in timesheets:
        kind = "BCBA" if ts.is_bcba else "Regular"
        provider = ts.provider.name if ts.provider else (ts.bcba.name if ts.bcba else "-")
        client = ts.client.name if ts.client else "-"
        lines.append(
            f"{ts.timesheet_number} [{kind}] Client: {client} | Provider: {provider} | "
            f"{ts.start_date.isoformat()} to {ts.end_date.isoformat()} | {_hours(ts.total_minutes)} hours"
        )
    lines.append("")
    return subject, "\n".join(lines)


def _lock_items(s: Session, item_ids: list[int] | None) -> list[EmailQueueItem]:
    q = s.query(EmailQueueItem).filter(EmailQueueItem.deleted_at.is_(None))
    if item_ids is None:
        q = q.filter(EmailQueueItem.status == EMAIL_QUEUED)
    else:
        q = q.filter(EmailQueueItem.id.in_(item_ids), EmailQueueItem.status.in_((EMAIL_QUEUED, EMAIL_FAILED)))
    items = q.order_by(EmailQueueItem.queued_at.asc(), EmailQueueItem.id.asc()).with_for_update(of=EmailQueueItem).all()
    for item in items:
        item.status = EMAIL_SENDING
    s.commit()
    return items


def _fail(items: list[EmailQueueItem], error: str) -> None:
    for item in items:
        item.status = EMAIL_FAILED
        item.last_error = error
        item.attempts = (item.attempts or 0) + 1


def send_batch(s: Session, config: Mapping, user: "User", item_ids: list[int] | None = None) -> dict:
    """
    Send queued items (all QUEUED, or the given ids) as one email to EMAIL_BATCH_RECIPIENT.
    Commits its own state changes.
    """
    recipient = (config.get("EMAIL_BATCH_RECIPIENT") or "").strip()
    if not recipient:
        raise EmailQueueError("EMAIL_BATCH_RECIPIENT is not configured.")

    items = _lock_items(s, item_ids)
    if not items:
        return {"sent": 0, "failed": 0, "batch_id": None, "message": "No items in queue to send"}

    ts_by_id = {
        ts.id: ts
        for ts in s.query(Timesheet).filter(Timesheet.id.in_([i.entity_id for i in items])).all()
    }
    valid: list[tuple[EmailQueueItem, Timesheet]] = []
    missing: list[EmailQueueItem] = []
    for item in items:
        ts = ts_by_id.get(item.entity_id)
        if ts is None or ts.deleted_at is not None:
            missing.append(item)
        else:
            valid.append((item, ts))

    if missing:
        _fail(missing, "Timesheet not found or deleted")
    batch_id = new_batch_id()

    if not valid:
        s.commit()
        return {"sent": 0, "failed": len(missing), "batch_id": None, "message": "No valid timesheets found"}

    subject, body = build_batch_email([ts for _item, ts in valid], utcnow().date().isoformat())
    ok, error = send_email(config, recipient, subject, body)

    now = utcnow()
    if ok:
        for item, ts in valid:
            item.status = EMAIL_SENT
            item.batch_id = batch_id
            item.sent_at = now
            item.attempts = (item.attempts or 0) + 1
            item.last_error = None
            ts.status = TIMESHEET_EMAILED
            ts.emailed_at = now
            ts.updated_at = now
        record_event(
            s,
            actor=user,
            action="email_queue.send",
            entity_type="EmailQueueItem",
            metadata={"batch_id": batch_id, "recipient": recipient, "item_ids": [i.id for i, _ts in valid]},
        )
        logger.info("Sent email batch %s with %s timesheet(s) to %s", batch_id, len(valid), recipient)
    else:
        _fail([item for item, _ts in valid], error)
        record_event(
            s,
            actor=user,
            action="email_queue.send_failed",
            entity_type="EmailQueueItem",
            reason=error,
            metadata={"batch_id": batch_id, "item_ids": [i.id for i, _ts in valid]},
        )
        logger.error("Email batch %s failed: %s", batch_id, error)
    s.commit()

    sent = len(valid) if ok else 0
    return {
        "sent": sent,
        "failed": len(missing) + (0 if ok else len(valid)),
        "batch_id": batch_id if ok else None,
        "error": None if ok else error,
    }


def delete_item(s: Session, item: EmailQueueItem, user: "User") -> None:
    if item.status == EMAIL_SENDING:
        raise EmailQueueError("Cannot delete an item that is being sent.")
    item.deleted_at = utcnow()
    record_event(
        s,
        actor=user,
        action="email_queue.delete",
        entity_type="EmailQueueItem",
        entity_id=str(item.id),
        metadata={"entity_type": item.entity_type, "entity_id": item.entity_id, "status": item.status},
    )


def bulk_delete(s: Session, ids: list[int], user: "User") -> int:
    items = (
        s.query(EmailQueueItem)
        .filter(
            EmailQueueItem.id.in_(ids),
            EmailQueueItem.deleted_at.is_(None),
            EmailQueueItem.status != EMAIL_SENDING,
        )
        .all()
    )
    now = utcnow()
    for item in items:
        item.deleted_at = now
    if items:
        record_event(
            s,
            actor=user,
            action="email_queue.bulk_delete",
            entity_type="EmailQueueItem",
            metadata={"item_ids": [i.id for i in items]},
        )
    return len(items)
