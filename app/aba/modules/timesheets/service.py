"""
Timesheet service layer.
Handles numbering, payload validation, overlap detection and the approval workflow.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import exists, or_
from sqlalchemy.orm import Session

from app.aba.audit import record_event
from app.aba.constants import (
    DEFAULT_TIMEZONE,
    EMAIL_QUEUED,
    ENTRY_NOTE_DIRECT,
    ENTRY_NOTE_SUPERVISION,
    TIMESHEET_APPROVED,
    TIMESHEET_DRAFT,
    TIMESHEET_EMAILED,
    TIMESHEET_REJECTED,
    TIMESHEET_SUBMITTED,
    UNIT_MINUTES,
)
from app.aba.mailer import notify_admins
from app.aba.models import utcnow
from app.aba.modules.directory.models import Client, Insurance, Provider
from app.aba.modules.email_queue.models import EmailQueueItem
from app.aba.modules.invoices.billing import minutes_to_units
from app.aba.modules.invoices.models import Invoice, InvoiceEntry
from app.aba.utils import parse_bool, parse_date, parse_hhmm

from .models import Timesheet, TimesheetEntry
from .visibility import VisibilityScope, can_view_timesheet

if TYPE_CHECKING:
    from app.aba.models import User

logger = logging.getLogger(__name__)

REGULAR_PREFIX = "T-"
BCBA_PREFIX = "BT-"
FIRST_NUMBER = 1001

# Valid status transitions (invoicing is tracked separately via invoice_id)
STATUS_TRANSITIONS = {
    TIMESHEET_DRAFT: {TIMESHEET_SUBMITTED, TIMESHEET_APPROVED, TIMESHEET_REJECTED},
    TIMESHEET_SUBMITTED: {TIMESHEET_APPROVED, TIMESHEET_REJECTED},
    TIMESHEET_REJECTED: {TIMESHEET_DRAFT},
    TIMESHEET_APPROVED: {TIMESHEET_EMAILED},
    TIMESHEET_EMAILED: set(),
}

EDITABLE_STATUSES = {TIMESHEET_DRAFT, TIMESHEET_REJECTED}


class TimesheetStateError(ValueError):
    """Operation not allowed in the timesheet's current state."""


class AlreadyQueuedError(TimesheetStateError):
    """The timesheet already has an email queue item."""


class OverlapConflictError(ValueError):
    def __init__(self, conflicts: list[dict]):
        self.conflicts = conflicts
        first = conflicts[0]["message"] if conflicts else "Overlap detected."
        super().__init__(first)


# ---------- Numbering ----------
def next_timesheet_number(s: Session, is_bcba: bool) -> str:
    prefix = BCBA_PREFIX if is_bcba else REGULAR_PREFIX
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = FIRST_NUMBER - 1
    rows = s.query(Timesheet.timesheet_number).filter(Timesheet.timesheet_number.like(f"{prefix}%")).all()
    for (number,) in rows:
        m = pattern.match(number or "")
        if m:
            highest = max(highest, int(m.group(1)))
    return f"{prefix}{highest + 1}"


# ---------- Validation ----------
def entry_type(notes: str | None) -> str:
    code = (notes or "").strip().upper()
    if code in (ENTRY_NOTE_DIRECT, ENTRY_NOTE_SUPERVISION):
        return code
    return "UNKNOWN"


def parse_entries(raw_entries, start_date: date | None = None, end_date: date | None = None) -> list[dict]:
    """
    Validate incoming entries and return normalized dicts
    (date, start_time, end_time, minutes, notes, start_minutes, end_minutes).
    """
    if not isinstance(raw_entries, list) or not raw_entries:
        raise ValueError("At least one entry is required.")

    out: list[dict] = []
    for idx, raw in enumerate(raw_entries, start=1):
        if not isinstance(raw, Mapping):
            raise ValueError(f"Entry {idx}: invalid entry.")
        try:
            d = parse_date(raw.get("date"))
        except ValueError:
            raise ValueError(f"Entry {idx}: invalid date.") from None
        if d is None:
            raise ValueError(f"Entry {idx}: date is required.")
        if d.weekday() == 5:
            raise ValueError(f"Entry {idx}: Saturdays are not allowed ({d.isoformat()}).")
        if start_date and end_date and not (start_date <= d <= end_date):
            raise ValueError(f"Entry {idx}: date {d.isoformat()} is outside the timesheet period.")

        start_time = (raw.get("start_time") or "").strip()
        end_time = (raw.get("end_time") or "").strip()
        start_minutes = parse_hhmm(start_time)
        end_minutes = parse_hhmm(end_time)
        if start_minutes is None or end_minutes is None:
            raise ValueError(f"Entry {idx}: times must be HH:MM (24h).")
        if end_minutes <= start_minutes:
            raise ValueError(f"Entry {idx}: end time must be after start time.")

        duration = end_minutes - start_minutes
        minutes = raw.get("minutes")
        if minutes in (None, ""):
            minutes = duration
        else:
            try:
                minutes = int(minutes)
            except (TypeError, ValueError):
                raise ValueError(f"Entry {idx}: minutes must be a whole number.") from None
            if minutes <= 0:
                raise ValueError(f"Entry {idx}: minutes must be greater than 0.")
            if abs(minutes - duration) > 1:
                raise ValueError(f"Entry {idx}: minutes ({minutes}) do not match {start_time}-{end_time}.")

        notes = raw.get("notes")
        notes = str(notes).strip() if notes not in (None, "") else None
        if notes and notes.upper() in (ENTRY_NOTE_DIRECT, ENTRY_NOTE_SUPERVISION):
            notes = notes.upper()

        out.append(
            {
                "date": d,
                "start_time": f"{start_minutes // 60:02d}:{start_minutes % 60:02d}",
                "end_time": f"{end_minutes // 60:02d}:{end_minutes % 60:02d}",
                "minutes": minutes,
                "notes": notes,
                "start_minutes": start_minutes,
                "end_minutes": end_minutes,
            }
        )
    return out


def _active(obj, label: str):
    if obj is None or getattr(obj, "deleted_at", None) is not None:
        raise ValueError(f"{label} not found.")
    if not obj.active:
        raise ValueError(f"{label} is inactive.")
    return obj


def _get_id(payload: Mapping, key: str) -> int | None:
    raw = payload.get(key)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer.") from None


def validate_timesheet_payload(s: Session, payload: Mapping, *, default_timezone: str = DEFAULT_TIMEZONE) -> dict:
    """Resolve references and entries; raises ValueError with a user-facing message."""
    is_bcba = bool(parse_bool(payload.get("is_bcba"), False))
    client_id = _get_id(payload, "client_id")
    bcba_id = _get_id(payload, "bcba_id")
    provider_id = _get_id(payload, "provider_id")
    insurance_id = _get_id(payload, "insurance_id")

    if client_id is None:
        raise ValueError("Client is required.")
    if bcba_id is None:
        raise ValueError("BCBA is required.")
    if not is_bcba and provider_id is None:
        raise ValueError("Provider is required.")

    client = _active(s.get(Client, client_id), "Client")
    bcba = _active(s.get(Provider, bcba_id), "BCBA")
    if bcba.kind != "BCBA":
        raise ValueError("Selected BCBA is not a BCBA provider.")
    provider = _active(s.get(Provider, provider_id), "Provider") if provider_id is not None else None

    if insurance_id is None and is_bcba:
        insurance_id = client.insurance_id
    if insurance_id is None:
        raise ValueError("Insurance is required.")
    insurance = _active(s.get(Insurance, insurance_id), "Insurance")

    try:
        start_date = parse_date(payload.get("start_date"))
        end_date = parse_date(payload.get("end_date"))
    except ValueError:
        raise ValueError("Invalid start or end date.") from None
    entries_raw = payload.get("entries")
    if (start_date is None or end_date is None) and isinstance(entries_raw, list) and entries_raw:
        parsed = parse_entries(entries_raw)
        start_date = start_date or min(e["date"] for e in parsed)
        end_date = end_date or max(e["date"] for e in parsed)
    if start_date is None or end_date is None:
        raise ValueError("Start and end dates are required.")
    if end_date < start_date:
        raise ValueError("End date must be on or after start date.")

    entries = parse_entries(entries_raw, start_date, end_date)

    return {
        "is_bcba": is_bcba,
        "client": client,
        "provider": provider,
        "bcba": bcba,
        "insurance": insurance,
        "service_type": (str(payload.get("service_type") or "").strip() or None),
        "start_date": start_date,
        "end_date": end_date,
        "timezone": (str(payload.get("timezone") or "").strip() or default_timezone),
        "entries": entries,
    }


# ---------- Overlaps ----------
def _ranges_overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    # Touching ranges (end == start) do not overlap.
    return start_a < end_b and start_b < end_a


def detect_overlaps(
    s: Session,
    *,
    provider: Provider | None,
    client: Client,
    entries: list[dict],
    exclude_timesheet_id: int | None = None,
) -> list[dict]:
    """
    Overlaps within `entries` (scope "internal") and against existing regular timesheets
    of the same provider and/or client (scope "provider", "client" or "both").
    """
    provider_info = {"id": provider.id, "name": provider.name} if provider else None
    client_info = {"id": client.id, "name": client.name}
    conflicts: list[dict] = []

    by_date: dict[date, list[dict]] = {}
    for e in entries:
        by_date.setdefault(e["date"], []).append(e)

    for d, items in sorted(by_date.items()):
        for i in range(len(items)):
            for j in range(i + 1, len(items)):
                a, b = items[i], items[j]
                if _ranges_overlap(a["start_minutes"], a["end_minutes"], b["start_minutes"], b["end_minutes"]):
                    conflicts.append(
                        {
                            "code": "OVERLAP_CONFLICT",
                            "date": d.isoformat(),
                            "start_time": a["start_time"],
                            "end_time": a["end_time"],
                            "entry_type": entry_type(a["notes"]),
                            "scope": "internal",
                            "provider": provider_info,
                            "client": client_info,
                            "message": (
                                f"Overlap detected on {d.isoformat()}: {entry_type(a['notes'])} "
                                f"{a['start_time']}-{a['end_time']} overlaps with {entry_type(b['notes'])} "
                                f"{b['start_time']}-{b['end_time']} in this timesheet."
                            ),
                        }
                    )

    if not by_date:
        return conflicts

    owner_filters = [Timesheet.client_id == client.id]
    if provider is not None:
        owner_filters.append(Timesheet.provider_id == provider.id)
    q = (
        s.query(TimesheetEntry)
        .join(Timesheet, TimesheetEntry.timesheet_id == Timesheet.id)
        .filter(
            Timesheet.deleted_at.is_(None),
            Timesheet.is_bcba.is_(False),
            TimesheetEntry.date.in_(list(by_date.keys())),
            or_(*owner_filters),
        )
    )
    if exclude_timesheet_id is not None:
        q = q.filter(Timesheet.id != exclude_timesheet_id)
    existing = q.all()

    for inc in entries:
        for ex in existing:
            if ex.date != inc["date"]:
                continue
            ex_start = parse_hhmm(ex.start_time)
            ex_end = parse_hhmm(ex.end_time)
            if ex_start is None or ex_end is None:
                continue
            if not _ranges_overlap(inc["start_minutes"], inc["end_minutes"], ex_start, ex_end):
                continue
            ts = ex.timesheet
            provider_match = provider is not None and ts.provider_id == provider.id
            client_match = ts.client_id == client.id
            if provider_match and client_match:
                scope = "both"
            elif provider_match:
                scope = "provider"
            elif client_match:
                scope = "client"
            else:
                continue
            who = {
                "both": "this provider and client",
                "provider": f"provider {provider.name if provider else ''}".strip(),
                "client": f"client {client.name}",
            }[scope]
            conflicts.append(
                {
                    "code": "OVERLAP_CONFLICT",
                    "date": inc["date"].isoformat(),
                    "start_time": inc["start_time"],
                    "end_time": inc["end_time"],
                    "entry_type": entry_type(inc["notes"]),
                    "scope": scope,
                    "provider": provider_info,
                    "client": client_info,
                    "conflicting": {
                        "timesheet_id": ts.id,
                        "timesheet_number": ts.timesheet_number,
                        "entry_id": ex.id,
                        "start_time": ex.start_time,
                        "end_time": ex.end_time,
                        "entry_type": entry_type(ex.notes),
                    },
                    "message": (
                        f"Overlap detected on {inc['date'].isoformat()}: {inc['start_time']}-{inc['end_time']} "
                        f"overlaps {ex.start_time}-{ex.end_time} on timesheet {ts.timesheet_number} for {who}."
                    ),
                }
            )
    return conflicts


# ---------- CRUD ----------
def _build_entries(entries: list[dict], unit_minutes: int = UNIT_MINUTES) -> list[TimesheetEntry]:
    return [
        TimesheetEntry(
            date=e["date"],
            start_time=e["start_time"],
            end_time=e["end_time"],
            minutes=e["minutes"],
            units=minutes_to_units(e["minutes"], unit_minutes),
            notes=e["notes"],
            invoiced=False,
        )
        for e in entries
    ]


def create_timesheet(
    s: Session,
    payload: Mapping,
    user: "User",
    *,
    default_timezone: str = DEFAULT_TIMEZONE,
    unit_minutes: int = UNIT_MINUTES,
) -> Timesheet:
    data = validate_timesheet_payload(s, payload, default_timezone=default_timezone)
    if not data["is_bcba"]:
        conflicts = detect_overlaps(s, provider=data["provider"], client=data["client"], entries=data["entries"])
        if conflicts:
            raise OverlapConflictError(conflicts)

    now = utcnow()
    ts = Timesheet(
        timesheet_number=next_timesheet_number(s, data["is_bcba"]),
        user_id=user.id,
        provider_id=data["provider"].id if data["provider"] else None,
        client_id=data["client"].id,
        bcba_id=data["bcba"].id,
        insurance_id=data["insurance"].id,
        is_bcba=data["is_bcba"],
        service_type=data["service_type"],
        start_date=data["start_date"],
        end_date=data["end_date"],
        timezone=data["timezone"],
        status=TIMESHEET_DRAFT,
        archived=False,
        created_at=now,
        updated_at=now,
    )
    ts.entries = _build_entries(data["entries"], unit_minutes)
    s.add(ts)
    s.flush()
    record_event(
        s,
        actor=user,
        action="timesheet.create",
        entity_type="Timesheet",
        entity_id=str(ts.id),
        metadata={
            "timesheet_number": ts.timesheet_number,
            "client_id": ts.client_id,
            "is_bcba": ts.is_bcba,
            "entries": len(ts.entries),
        },
    )
    return ts


def is_invoiced(s: Session, ts: Timesheet) -> bool:
    """True while any entry is billed or any live invoice still carries a line for this timesheet."""
    if ts.invoice_id is not None or ts.invoiced_at is not None:
        return True
    billed_entry = exists().where(TimesheetEntry.timesheet_id == ts.id, TimesheetEntry.invoiced.is_(True))
    live_line = (
        exists()
        .where(InvoiceEntry.timesheet_id == ts.id, InvoiceEntry.invoice_id == Invoice.id)
        .where(Invoice.deleted_at.is_(None))
    )
    return bool(s.query(billed_entry).scalar() or s.query(live_line).scalar())


def _assert_mutable(s: Session, ts: Timesheet, action: str) -> None:
    if is_invoiced(s, ts):
        raise TimesheetStateError(f"Cannot {action} an invoiced timesheet.")


def update_timesheet(s: Session, ts: Timesheet, payload: Mapping, user: "User", *, unit_minutes: int = UNIT_MINUTES) -> Timesheet:
    _assert_mutable(s, ts, "edit")
    if ts.status not in EDITABLE_STATUSES:
        raise TimesheetStateError(f"Only draft or rejected timesheets can be edited (status: {ts.status}).")

    merged = {
        "is_bcba": ts.is_bcba,
        "client_id": ts.client_id,
        "provider_id": ts.provider_id,
        "bcba_id": ts.bcba_id,
        "insurance_id": ts.insurance_id,
        "service_type": ts.service_type,
        "start_date": ts.start_date.isoformat(),
        "end_date": ts.end_date.isoformat(),
        "timezone": ts.timezone,
        "entries": [e.to_dict() for e in ts.entries],
    }
    merged.update({k: v for k, v in payload.items() if k != "is_bcba"})
    data = validate_timesheet_payload(s, merged, default_timezone=ts.timezone)
    if not ts.is_bcba:
        conflicts = detect_overlaps(
            s,
            provider=data["provider"],
            client=data["client"],
            entries=data["entries"],
            exclude_timesheet_id=ts.id,
        )
        if conflicts:
            raise OverlapConflictError(conflicts)

    old_status = ts.status
    ts.provider_id = data["provider"].id if data["provider"] else None
    ts.client_id = data["client"].id
    ts.bcba_id = data["bcba"].id
    ts.insurance_id = data["insurance"].id
    ts.service_type = data["service_type"]
    ts.start_date = data["start_date"]
    ts.end_date = data["end_date"]
    ts.timezone = data["timezone"]
    ts.entries = _build_entries(data["entries"], unit_minutes)
    if ts.status == TIMESHEET_REJECTED:
        ts.status = TIMESHEET_DRAFT
        ts.rejection_reason = None
        ts.rejected_at = None
    ts.updated_at = utcnow()

    record_event(
        s,
        actor=user,
        action="timesheet.update",
        entity_type="Timesheet",
        entity_id=str(ts.id),
        metadata={
            "timesheet_number": ts.timesheet_number,
            "entries": len(ts.entries),
            "changes": {"status": {"old": old_status, "new": ts.status}} if old_status != ts.status else {},
        },
    )
    return ts


def delete_timesheet(s: Session, ts: Timesheet, user: "User") -> None:
    _assert_mutable(s, ts, "delete")
    ts.deleted_at = utcnow()
    ts.updated_at = ts.deleted_at
    record_event(
        s,
        actor=user,
        action="timesheet.delete",
        entity_type="Timesheet",
        entity_id=str(ts.id),
        metadata={"timesheet_number": ts.timesheet_number, "status": ts.status},
    )


def _transition(ts: Timesheet, new_status: str) -> str:
    allowed = STATUS_TRANSITIONS.get(ts.status, set())
    if new_status not in allowed:
        raise TimesheetStateError(f"Cannot change timesheet from {ts.status} to {new_status}.")
    old = ts.status
    ts.status = new_status
    ts.updated_at = utcnow()
    return old


def submit_timesheet(s: Session, ts: Timesheet, user: "User", config: Mapping | None = None) -> Timesheet:
    if ts.user_id != user.id and not user.is_admin:
        raise PermissionError("Only the timesheet owner can submit it.")
    if ts.status != TIMESHEET_DRAFT:
        raise TimesheetStateError(f"Only draft timesheets can be submitted (status: {ts.status}).")
    old = _transition(ts, TIMESHEET_SUBMITTED)
    ts.submitted_at = utcnow()
    record_event(
        s,
        actor=user,
        action="timesheet.submit",
        entity_type="Timesheet",
        entity_id=str(ts.id),
        metadata={"timesheet_number": ts.timesheet_number, "changes": {"status": {"old": old, "new": ts.status}}},
    )
    if config is not None:
        client_name = ts.client.name if ts.client else f"client #{ts.client_id}"
        notify_admins(
            s,
            config,
            f"Timesheet {ts.timesheet_number} submitted for approval",
            (
                f"{user.email} submitted timesheet {ts.timesheet_number} for {client_name} "
                f"({ts.start_date.isoformat()} to {ts.end_date.isoformat()}).\n"
            ),
        )
    return ts


def approve_timesheet(s: Session, ts: Timesheet, user: "User") -> EmailQueueItem:
    """Approve and enqueue for the batch email in the same transaction."""
    if ts.status not in (TIMESHEET_DRAFT, TIMESHEET_SUBMITTED):
        raise TimesheetStateError(f"Only draft or submitted timesheets can be approved (status: {ts.status}).")

    entity_type = "BCBA" if ts.is_bcba else "REGULAR"
    item = (
        s.query(EmailQueueItem)
        .filter(EmailQueueItem.entity_type == entity_type, EmailQueueItem.entity_id == ts.id)
        .one_or_none()
    )
    if item is not None and item.deleted_at is None:
        raise AlreadyQueuedError("Timesheet is already queued for email.")

    now = utcnow()
    old = _transition(ts, TIMESHEET_APPROVED)
    ts.approved_at = now
    ts.queued_at = now
    ts.rejection_reason = None

    if item is None:
        item = EmailQueueItem(entity_type=entity_type, entity_id=ts.id)
        s.add(item)
    item.status = EMAIL_QUEUED
    item.queued_by_user_id = user.id
    item.queued_at = now
    item.attempts = 0
    item.last_error = None
    item.batch_id = None
    item.sent_at = None
    item.deleted_at = None
    s.flush()

    record_event(
        s,
        actor=user,
        action="timesheet.approve",
        entity_type="Timesheet",
        entity_id=str(ts.id),
        metadata={
            "timesheet_number": ts.timesheet_number,
            "email_queue_item_id": item.id,
            "changes": {"status": {"old": old, "new": ts.status}},
        },
    )
    return item


def reject_timesheet(s: Session, ts: Timesheet, user: "User", reason: str | None) -> Timesheet:
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("Rejection reason is required.")
    _assert_mutable(s, ts, "reject")
    if ts.status not in (TIMESHEET_DRAFT, TIMESHEET_SUBMITTED):
        raise TimesheetStateError(f"Only draft or submitted timesheets can be rejected (status: {ts.status}).")
    old = _transition(ts, TIMESHEET_REJECTED)
    ts.rejection_reason = reason
    ts.rejected_at = utcnow()
    record_event(
        s,
        actor=user,
        action="timesheet.reject",
        entity_type="Timesheet",
        entity_id=str(ts.id),
        reason=reason,
        metadata={"timesheet_number": ts.timesheet_number, "changes": {"status": {"old": old, "new": ts.status}}},
    )
    return ts


def archive_timesheets(s: Session, ids: list[int], user: "User", scope: VisibilityScope) -> dict:
    """Archive selected approved/emailed timesheets the user can see. Returns archived/skipped ids."""
    archived, skipped = [], []
    rows = s.query(Timesheet).filter(Timesheet.id.in_(ids), Timesheet.deleted_at.is_(None)).all()
    found = {ts.id: ts for ts in rows}
    for ts_id in ids:
        ts = found.get(ts_id)
        if ts is None or not can_view_timesheet(scope, ts):
            skipped.append({"id": ts_id, "reason": "Not found."})
            continue
        if ts.status not in (TIMESHEET_APPROVED, TIMESHEET_EMAILED):
            skipped.append({"id": ts_id, "reason": f"Status {ts.status} cannot be archived."})
            continue
        if ts.archived:
            skipped.append({"id": ts_id, "reason": "Already archived."})
            continue
        ts.archived = True
        ts.updated_at = utcnow()
        archived.append(ts_id)
    if archived:
        record_event(
            s,
            actor=user,
            action="timesheet.archive",
            entity_type="Timesheet",
            metadata={"timesheet_ids": archived},
        )
    logger.info("Archived %s timesheet(s); skipped %s", len(archived), len(skipped))
    return {"archived": archived, "skipped": skipped}
