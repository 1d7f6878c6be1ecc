from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.aba.constants import (
    EMAIL_QUEUED,
    INVOICE_VOID,
    TIMESHEET_APPROVED,
    TIMESHEET_EMAILED,
    TIMESHEET_REJECTED,
    TIMESHEET_STATUSES,
)
from app.aba.modules.directory.models import Client, Insurance, Provider
from app.aba.modules.email_queue.models import EmailQueueItem
from app.aba.modules.invoices.models import Invoice, InvoiceEntry
from app.aba.modules.timesheets.models import Timesheet
from app.aba.modules.timesheets.visibility import VisibilityScope, apply_visibility
from app.aba.utils import money

REPORT_TYPES = ("timesheet_summary", "invoice_summary", "insurance_billing", "provider_performance")
ZERO = Decimal("0")


@dataclass
class Report:
    title: str
    columns: list[str]
    rows: list[list] = field(default_factory=list)
    summary: list[tuple[str, object]] = field(default_factory=list)  # (label, value) pairs

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "columns": self.columns,
            "rows": [dict(zip(self.columns, r)) for r in self.rows],
            "summary": {label: value for label, value in self.summary},
        }


def _hours(minutes: int) -> str:
    return f"{(minutes or 0) / 60:.2f}"


def _visible_timesheets(s: Session, scope: VisibilityScope, start_date: date | None, end_date: date | None):
    q = s.query(Timesheet).filter(Timesheet.deleted_at.is_(None))
    q = apply_visibility(q, scope)
    if start_date:
        q = q.filter(Timesheet.end_date >= start_date)
    if end_date:
        q = q.filter(Timesheet.start_date <= end_date)
    return q


def timesheet_summary(s: Session, scope: VisibilityScope, start_date: date | None, end_date: date | None) -> Report:
    timesheets = _visible_timesheets(s, scope, start_date, end_date).order_by(
        Timesheet.start_date.asc(), Timesheet.id.asc()
    ).all()
    report = Report(
        title="Timesheet Summary",
        columns=[
            "Timesheet #", "Type", "Client", "Provider", "BCBA", "Insurance",
            "Start Date", "End Date", "Status", "Entries", "Hours", "Units",
        ],
    )
    total_minutes = 0
    total_units = ZERO
    by_status: dict[str, int] = defaultdict(int)
    for ts in timesheets:
        total_minutes += ts.total_minutes
        total_units += ts.total_units
        by_status[ts.status] += 1
        report.rows.append(
            [
                ts.timesheet_number,
                "BCBA" if ts.is_bcba else "Regular",
                ts.client.name if ts.client else "",
                ts.provider.name if ts.provider else "",
                ts.bcba.name if ts.bcba else "",
                ts.insurance.name if ts.insurance else "",
                ts.start_date.isoformat(),
                ts.end_date.isoformat(),
                ts.status,
                len(ts.entries),
                _hours(ts.total_minutes),
                str(ts.total_units),
            ]
        )
    report.summary = [
        ("Total Timesheets", len(timesheets)),
        ("Total Hours", _hours(total_minutes)),
        ("Total Units", str(total_units)),
    ] + [(f"Status {status}", by_status.get(status, 0)) for status in sorted(TIMESHEET_STATUSES)]
    return report


def _invoices(s: Session, start_date: date | None, end_date: date | None):
    q = s.query(Invoice).filter(Invoice.deleted_at.is_(None), Invoice.status != INVOICE_VOID)
    if start_date:
        q = q.filter(Invoice.end_date >= start_date)
    if end_date:
        q = q.filter(Invoice.start_date <= end_date)
    return q


def invoice_summary(s: Session, start_date: date | None, end_date: date | None) -> Report:
    invoices = _invoices(s, start_date, end_date).order_by(Invoice.start_date.asc(), Invoice.id.asc()).all()
    report = Report(
        title="Invoice Summary",
        columns=[
            "Invoice #", "Client", "Start Date", "End Date", "Status",
            "Total", "Paid", "Adjustments", "Outstanding",
        ],
    )
    totals = {"total": ZERO, "paid": ZERO, "adjustments": ZERO, "outstanding": ZERO}
    for inv in invoices:
        totals["total"] += inv.total_amount
        totals["paid"] += inv.paid_amount
        totals["adjustments"] += inv.adjustments
        totals["outstanding"] += inv.outstanding
        report.rows.append(
            [
                inv.invoice_number,
                inv.client.name if inv.client else "",
                inv.start_date.isoformat(),
                inv.end_date.isoformat(),
                inv.status,
                money(inv.total_amount),
                money(inv.paid_amount),
                money(inv.adjustments),
                money(inv.outstanding),
            ]
        )
    report.summary = [
        ("Total Invoices", len(invoices)),
        ("Total Billed", money(totals["total"])),
        ("Total Paid", money(totals["paid"])),
        ("Total Adjustments", money(totals["adjustments"])),
        ("Total Outstanding", money(totals["outstanding"])),
    ]
    return report


def insurance_billing(s: Session, start_date: date | None, end_date: date | None) -> Report:
    invoice_ids = _invoices(s, start_date, end_date).with_entities(Invoice.id).subquery()
    rows = (
        s.query(
            Insurance.name,
            func.count(func.distinct(InvoiceEntry.invoice_id)),
            func.count(InvoiceEntry.id),
            func.coalesce(func.sum(InvoiceEntry.minutes), 0),
            func.coalesce(func.sum(InvoiceEntry.units), 0),
            func.coalesce(func.sum(InvoiceEntry.billable_units), 0),
            func.coalesce(func.sum(InvoiceEntry.amount), 0),
        )
        .join(Insurance, InvoiceEntry.insurance_id == Insurance.id)
        .filter(InvoiceEntry.invoice_id.in_(select(invoice_ids.c.id)))
        .group_by(Insurance.name)
        .order_by(Insurance.name.asc())
        .all()
    )
    report = Report(
        title="Insurance Billing",
        columns=["Insurance", "Invoices", "Entries", "Hours", "Units", "Billable Units", "Amount"],
    )
    grand_total = ZERO
    for name, invoice_count, entry_count, minutes, units, billable, amount in rows:
        grand_total += Decimal(str(amount))
        report.rows.append(
            [
                name,
                int(invoice_count),
                int(entry_count),
                _hours(int(minutes)),
                str(Decimal(str(units)).quantize(Decimal("0.01"))),
                str(Decimal(str(billable)).quantize(Decimal("0.01"))),
                money(Decimal(str(amount))),
            ]
        )
    report.summary = [("Insurance Plans", len(rows)), ("Total Amount", money(grand_total))]
    return report


def provider_performance(s: Session, scope: VisibilityScope, start_date: date | None, end_date: date | None) -> Report:
    timesheets = _visible_timesheets(s, scope, start_date, end_date).all()
    stats: dict[int, dict] = {}
    for ts in timesheets:
        provider = ts.provider or ts.bcba
        if provider is None:
            continue
        row = stats.setdefault(
            provider.id,
            {"name": provider.name, "kind": provider.kind, "count": 0, "approved": 0, "rejected": 0, "minutes": 0, "units": ZERO},
        )
        row["count"] += 1
        if ts.status in (TIMESHEET_APPROVED, TIMESHEET_EMAILED):
            row["approved"] += 1
        elif ts.status == TIMESHEET_REJECTED:
            row["rejected"] += 1
        row["minutes"] += ts.total_minutes
        row["units"] += ts.total_units

    report = Report(
        title="Provider Performance",
        columns=["Provider", "Kind", "Timesheets", "Approved", "Rejected", "Hours", "Units"],
    )
    for row in sorted(stats.values(), key=lambda r: r["name"].lower()):
        report.rows.append(
            [row["name"], row["kind"], row["count"], row["approved"], row["rejected"], _hours(row["minutes"]), str(row["units"])]
        )
    return report


def build_report(
    s: Session,
    report_type: str,
    scope: VisibilityScope,
    start_date: date | None = None,
    end_date: date | None = None,
) -> Report:
    if report_type == "timesheet_summary":
        return timesheet_summary(s, scope, start_date, end_date)
    if report_type == "invoice_summary":
        return invoice_summary(s, start_date, end_date)
    if report_type == "insurance_billing":
        return insurance_billing(s, start_date, end_date)
    if report_type == "provider_performance":
        return provider_performance(s, scope, start_date, end_date)
    raise ValueError(f"Unknown report type. Must be one of: {', '.join(REPORT_TYPES)}")


def dashboard_stats(s: Session, scope: VisibilityScope, sections: set[str]) -> dict:
    """Counts for the dashboard sections the user may see."""
    data: dict = {}
    if "timesheets" in sections:
        q = apply_visibility(s.query(Timesheet.status, func.count(Timesheet.id)), scope)
        counts = dict(q.filter(Timesheet.deleted_at.is_(None)).group_by(Timesheet.status).all())
        data["timesheets"] = {status: int(counts.get(status, 0)) for status in sorted(TIMESHEET_STATUSES)}
        data["timesheets"]["total"] = sum(data["timesheets"].values())
        data["queued_emails"] = (
            s.query(func.count(EmailQueueItem.id))
            .filter(EmailQueueItem.deleted_at.is_(None), EmailQueueItem.status == EMAIL_QUEUED)
            .scalar()
            or 0
        )
    if "invoices" in sections:
        billed, paid, outstanding, count = (
            s.query(
                func.coalesce(func.sum(Invoice.total_amount), 0),
                func.coalesce(func.sum(Invoice.paid_amount), 0),
                func.coalesce(func.sum(Invoice.outstanding), 0),
                func.count(Invoice.id),
            )
            .filter(Invoice.deleted_at.is_(None), Invoice.status != INVOICE_VOID)
            .one()
        )
        data["invoices"] = {
            "count": int(count),
            "billed": money(Decimal(str(billed))),
            "paid": money(Decimal(str(paid))),
            "outstanding": money(Decimal(str(outstanding))),
        }
    if "reports" in sections:
        data["directory"] = {
            "active_clients": s.query(func.count(Client.id))
            .filter(Client.deleted_at.is_(None), Client.active.is_(True))
            .scalar()
            or 0,
            "active_providers": s.query(func.count(Provider.id))
            .filter(Provider.deleted_at.is_(None), Provider.active.is_(True))
            .scalar()
            or 0,
        }
    return data
