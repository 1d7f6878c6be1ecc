"""
Invoice generation.

Weekly job: every Tuesday 07:00 (billing timezone) the previous Monday-to-Monday
period is billed. Approved (or already emailed) regular timesheets are grouped by
client; each client gets one invoice created in its own savepoint, and the billed
timesheet entries are flagged `invoiced` in that same savepoint so an entry can
never be billed twice.

Batch generation: admins can invoice a hand-picked set of timesheets; those are
grouped by client and Monday-Sunday calendar week.
"""
from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import exists, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, contains_eager

from app.aba.audit import record_event
from app.aba.constants import BILLABLE_TIMESHEET_STATUSES, INVOICE_DRAFT, UNIT_MINUTES
from app.aba.mailer import notify_admins
from app.aba.models import Role, User, utcnow
from app.aba.modules.timesheets.models import Timesheet, TimesheetEntry
from app.aba.utils import quantize_money

from .billing import RateError, calculate_entry_totals, resolve_rate
from .billing_period import BillingPeriod, calculate_weekly_billing_period, format_billing_period, week_end, week_start
from .models import Invoice, InvoiceEntry, ScheduledJobRun

logger = logging.getLogger(__name__)

JOB_NAME = "weekly_invoice_generation"


class InvoiceGenerationError(Exception):
    pass


class EntriesAlreadyInvoicedError(InvoiceGenerationError):
    """Another run flagged some of the selected entries first."""


@dataclass
class InvoiceGenerationResult:
    success: bool = True
    invoices_created: int = 0
    clients_processed: int = 0
    errors: list[str] = field(default_factory=list)
    invoice_ids: list[int] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")
    skipped: list[str] = field(default_factory=list)
    period: BillingPeriod | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "invoices_created": self.invoices_created,
            "clients_processed": self.clients_processed,
            "errors": self.errors,
            "skipped": self.skipped,
            "invoice_ids": self.invoice_ids,
            "total_amount": str(quantize_money(self.total_amount)),
            "period": self.period.to_dict() if self.period else None,
        }


# ---------- Numbering ----------
def next_invoice_number(s: Session, year: int | None = None) -> str:
    if year is None:
        year = utcnow().year
    prefix = f"INV-{year}-"
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = 0
    for (number,) in s.query(Invoice.invoice_number).filter(Invoice.invoice_number.like(f"{prefix}%")).all():
        m = pattern.match(number or "")
        if m:
            highest = max(highest, int(m.group(1)))
    return f"{prefix}{highest + 1:05d}"


def resolve_invoice_creator(s: Session, actor: User | None) -> User:
    """The acting user, else the first active admin (for cron runs)."""
    if actor is not None:
        return actor
    admin = (
        s.query(User)
        .filter(User.is_active.is_(True), User.deleted_at.is_(None), User.roles.any(Role.is_admin.is_(True)))
        .order_by(User.id.asc())
        .first()
    )
    if admin is None:
        raise InvoiceGenerationError("No active admin user found to own generated invoices.")
    return admin


# ---------- Shared invoice builder ----------
def _timesheet_rate(ts: Timesheet) -> Decimal:
    insurance = ts.insurance or (ts.client.insurance if ts.client else None)
    return resolve_rate(insurance, ts.is_bcba)


def _create_invoice(
    s: Session,
    *,
    client_id: int,
    start_date: date,
    end_date: date,
    timesheets: list[Timesheet],
    entries_by_ts: Mapping[int, list[TimesheetEntry]],
    creator: User,
    unit_minutes: int = UNIT_MINUTES,
    notes: str | None = None,
) -> Invoice:
    """Create the invoice + lines, flag entries invoiced and link timesheets. Caller owns the transaction."""
    now = utcnow()
    rates = {ts.id: _timesheet_rate(ts) for ts in timesheets}

    invoice = Invoice(
        invoice_number=next_invoice_number(s, now.year),
        client_id=client_id,
        start_date=start_date,
        end_date=end_date,
        total_amount=Decimal("0.00"),
        paid_amount=Decimal("0.00"),
        adjustments=Decimal("0.00"),
        outstanding=Decimal("0.00"),
        status=INVOICE_DRAFT,
        created_by_user_id=creator.id,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    s.add(invoice)

    total = Decimal("0.00")
    lines: list[InvoiceEntry] = []
    billed: list[TimesheetEntry] = []
    for ts in timesheets:
        rate = rates[ts.id]
        for entry in entries_by_ts.get(ts.id, []):
            billed.append(entry)
            totals = calculate_entry_totals(entry.minutes, entry.notes, rate, not ts.is_bcba, unit_minutes)
            lines.append(
                InvoiceEntry(
                    timesheet_id=ts.id,
                    timesheet_entry_id=entry.id,
                    provider_id=ts.provider_id or ts.bcba_id,
                    insurance_id=ts.insurance_id,
                    service_date=entry.date,
                    notes=entry.notes,
                    minutes=entry.minutes,
                    units=totals.units,
                    billable_units=totals.billable_units,
                    rate=rate,
                    amount=totals.amount,
                    created_at=now,
                )
            )
            total += totals.amount

    if not lines:
        raise InvoiceGenerationError("No billable entries.")

    _claim_entries(s, billed)

    invoice.entries = lines
    invoice.total_amount = quantize_money(total)
    invoice.outstanding = invoice.total_amount
    s.flush()
    for ts in timesheets:
        ts.invoice_id = invoice.id
        ts.invoiced_at = now
        ts.updated_at = now
    return invoice


def _claim_entries(s: Session, entries: list[TimesheetEntry]) -> None:
    """
    Flag entries invoiced with a conditional UPDATE. Loaded copies may be stale, so the
    row count is the only reliable answer to "were these still unbilled?".
    """
    ids = [e.id for e in entries]
    stmt = (
        update(TimesheetEntry)
        .where(TimesheetEntry.id.in_(ids), TimesheetEntry.invoiced.is_(False))
        .values(invoiced=True)
        .execution_options(synchronize_session=False)
    )
    claimed = s.execute(stmt).rowcount
    if claimed != len(ids):
        raise EntriesAlreadyInvoicedError(
            f"{len(ids) - claimed} of {len(ids)} entries were already invoiced by another run."
        )
    for entry in entries:
        s.expire(entry, ["invoiced"])


def _unbilled_entries(
    s: Session,
    timesheet_ids: list[int],
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict[int, list[TimesheetEntry]]:
    """Un-invoiced entries of the given timesheets, read fresh from the database and keyed by timesheet id."""
    q = s.query(TimesheetEntry).filter(
        TimesheetEntry.timesheet_id.in_(timesheet_ids),
        TimesheetEntry.invoiced.is_(False),
    )
    if start_date is not None:
        q = q.filter(TimesheetEntry.date >= start_date)
    if end_date is not None:
        q = q.filter(TimesheetEntry.date <= end_date)
    out: dict[int, list[TimesheetEntry]] = defaultdict(list)
    for entry in q.order_by(TimesheetEntry.date, TimesheetEntry.start_time, TimesheetEntry.id).populate_existing():
        out[entry.timesheet_id].append(entry)
    return dict(out)


# ---------- Weekly job ----------
def _candidate_timesheets(s: Session, period: BillingPeriod) -> list[Timesheet]:
    """Regular timesheets overlapping the period with un-invoiced entries dated inside it (only those entries loaded)."""
    entry_in_period = (
        TimesheetEntry.invoiced.is_(False),
        TimesheetEntry.date >= period.start_date,
        TimesheetEntry.date <= period.end_date,
    )
    q = (
        s.query(Timesheet)
        .join(Timesheet.entries)
        .filter(
            Timesheet.deleted_at.is_(None),
            Timesheet.is_bcba.is_(False),
            Timesheet.status.in_(BILLABLE_TIMESHEET_STATUSES),
            Timesheet.start_date <= period.end_date,
            Timesheet.end_date >= period.start_date,
            *entry_in_period,
        )
        .options(contains_eager(Timesheet.entries))
        .populate_existing()
        .order_by(Timesheet.client_id, Timesheet.id, TimesheetEntry.date, TimesheetEntry.start_time)
    )
    return list(dict.fromkeys(q))


def generate_invoices_for_approved_timesheets(
    s: Session,
    period: BillingPeriod | None = None,
    *,
    actor: User | None = None,
    config: Mapping | None = None,
    tz: str | None = None,
) -> InvoiceGenerationResult:
    """
    Run the weekly invoice generation for `period` (default: the most recently completed one).
    Commits per client; a failing client is rolled back and reported without stopping the run.
    """
    cfg = config or {}
    unit_minutes = int(cfg.get("INVOICE_UNIT_MINUTES") or UNIT_MINUTES)
    if period is None:
        period = calculate_weekly_billing_period(tz=tz or cfg.get("BILLING_TIMEZONE"))
    result = InvoiceGenerationResult(period=period)

    run = ScheduledJobRun(
        job_name=JOB_NAME,
        started_at=utcnow(),
        period_start=period.start_date,
        period_end=period.end_date,
        period_label=period.label,
    )
    s.add(run)
    s.commit()
    logger.info("Invoice generation started for %s", period.label)

    try:
        creator = resolve_invoice_creator(s, actor)
        timesheets = _candidate_timesheets(s, period)
    except InvoiceGenerationError as e:
        result.success = False
        result.errors.append(str(e))
        _finish_run(s, run, result)
        return result

    by_client: dict[int, list[Timesheet]] = defaultdict(list)
    for ts in timesheets:
        by_client[ts.client_id].append(ts)

    for client_id, client_timesheets in by_client.items():
        result.clients_processed += 1
        client_name = client_timesheets[0].client.name if client_timesheets[0].client else f"#{client_id}"
        # Re-read per client; a concurrent run may have billed entries since the candidate query.
        entries_by_ts = _unbilled_entries(s, [ts.id for ts in client_timesheets], period.start_date, period.end_date)
        if not entries_by_ts:
            result.skipped.append(f"Client {client_name}: already invoiced for {period.label}")
            continue

        try:
            with s.begin_nested():
                invoice = _create_invoice(
                    s,
                    client_id=client_id,
                    start_date=period.start_date,
                    end_date=period.end_date,
                    timesheets=[ts for ts in client_timesheets if ts.id in entries_by_ts],
                    entries_by_ts=entries_by_ts,
                    creator=creator,
                    unit_minutes=unit_minutes,
                )
                record_event(
                    s,
                    actor=actor,
                    action="invoice.generate",
                    entity_type="Invoice",
                    entity_id=str(invoice.id),
                    metadata={
                        "invoice_number": invoice.invoice_number,
                        "client_id": client_id,
                        "period": period.label,
                        "timesheet_ids": [ts.id for ts in client_timesheets],
                        "total_amount": str(invoice.total_amount),
                        "automatic": actor is None,
                    },
                )
            s.commit()
        except EntriesAlreadyInvoicedError as e:
            s.rollback()
            logger.warning("Skipping client %s: %s", client_id, e)
            result.skipped.append(f"Client {client_name}: {e}")
            continue
        except (RateError, InvoiceGenerationError, SQLAlchemyError) as e:
            s.rollback()
            logger.exception("Invoice generation failed for client %s", client_id)
            result.errors.append(f"Client {client_name}: {e}")
            continue

        result.invoices_created += 1
        result.invoice_ids.append(invoice.id)
        result.total_amount += invoice.total_amount
        logger.info(
            "Generated invoice %s for client %s (%s timesheets, $%s)",
            invoice.invoice_number,
            client_id,
            len(client_timesheets),
            invoice.total_amount,
        )

    result.success = not result.errors
    _finish_run(s, run, result)

    if result.invoices_created and config is not None:
        count = result.invoices_created
        notify_admins(
            s,
            config,
            f"Automatic Invoice Generation - {count} Invoice{'s' if count != 1 else ''} Created",
            (
                f"{count} invoice{'s' if count != 1 else ''} {'were' if count != 1 else 'was'} generated "
                f"for approved timesheets ({period.label}).\n"
                f"Total amount: ${quantize_money(result.total_amount)}\n"
            ),
        )
    return result


def _finish_run(s: Session, run: ScheduledJobRun, result: InvoiceGenerationResult) -> None:
    run.finished_at = utcnow()
    run.success = result.success
    run.invoices_created = result.invoices_created
    run.clients_processed = result.clients_processed
    run.errors_json = json.dumps(result.errors) if result.errors else None
    s.commit()
    logger.info(
        "Invoice generation finished for %s: created=%s clients=%s errors=%s",
        run.period_label,
        result.invoices_created,
        result.clients_processed,
        len(result.errors),
    )


def last_generation_run(s: Session) -> ScheduledJobRun | None:
    return (
        s.query(ScheduledJobRun)
        .filter(ScheduledJobRun.job_name == JOB_NAME)
        .order_by(ScheduledJobRun.started_at.desc(), ScheduledJobRun.id.desc())
        .first()
    )


# ---------- Batch generation from selected timesheets ----------
def generate_invoices_for_timesheets(
    s: Session,
    timesheet_ids: list[int],
    actor: User,
    *,
    unit_minutes: int = UNIT_MINUTES,
) -> InvoiceGenerationResult:
    """
    Invoice selected approved/emailed, un-invoiced timesheets, one invoice per client and
    Monday-Sunday week. Groups that already have an invoice for that client and week are skipped.
    Runs inside the caller's transaction (one savepoint per group).
    """
    result = InvoiceGenerationResult()
    if not timesheet_ids:
        raise ValueError("No timesheets selected.")

    timesheets = (
        s.query(Timesheet)
        .filter(
            Timesheet.id.in_(timesheet_ids),
            Timesheet.deleted_at.is_(None),
            Timesheet.status.in_(BILLABLE_TIMESHEET_STATUSES),
            Timesheet.invoice_id.is_(None),
        )
        .order_by(Timesheet.client_id, Timesheet.start_date, Timesheet.id)
        .all()
    )
    if not timesheets:
        raise ValueError("No eligible timesheets found. Timesheets must be APPROVED or EMAILED and not invoiced.")

    groups: dict[tuple[int, date], list[Timesheet]] = defaultdict(list)
    for ts in timesheets:
        groups[(ts.client_id, week_start(ts.start_date))].append(ts)

    for (client_id, monday), group in sorted(groups.items()):
        sunday = week_end(monday)
        result.clients_processed += 1
        client_name = group[0].client.name if group[0].client else f"#{client_id}"
        label = format_billing_period(monday, sunday)

        dup = s.query(
            exists().where(
                Invoice.client_id == client_id,
                Invoice.start_date == monday,
                Invoice.end_date == sunday,
                Invoice.deleted_at.is_(None),
            )
        ).scalar()
        if dup:
            result.skipped.append(f"Client {client_name}: invoice already exists for week {label}")
            continue

        entries_by_ts = _unbilled_entries(s, [ts.id for ts in group])
        try:
            with s.begin_nested():
                invoice = _create_invoice(
                    s,
                    client_id=client_id,
                    start_date=monday,
                    end_date=sunday,
                    timesheets=[ts for ts in group if ts.id in entries_by_ts],
                    entries_by_ts=entries_by_ts,
                    creator=actor,
                    unit_minutes=unit_minutes,
                )
                record_event(
                    s,
                    actor=actor,
                    action="invoice.generate",
                    entity_type="Invoice",
                    entity_id=str(invoice.id),
                    metadata={
                        "invoice_number": invoice.invoice_number,
                        "client_id": client_id,
                        "week": label,
                        "timesheet_ids": [ts.id for ts in group],
                        "total_amount": str(invoice.total_amount),
                    },
                )
        except (RateError, InvoiceGenerationError) as e:
            result.errors.append(f"Client {client_name} ({label}): {e}")
            continue

        result.invoices_created += 1
        result.invoice_ids.append(invoice.id)
        result.total_amount += invoice.total_amount

    result.success = not result.errors
    return result
