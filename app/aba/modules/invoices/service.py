"""
Invoice lifecycle after generation: payments, adjustments, approval (send) and void.
"""
from __future__ import annotations

import secrets
from collections.abc import Mapping
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.aba.audit import record_event
from app.aba.constants import (
    INVOICE_DRAFT,
    INVOICE_PAID,
    INVOICE_PARTIALLY_PAID,
    INVOICE_READY,
    INVOICE_SENT,
    INVOICE_VOID,
)
from app.aba.models import utcnow
from app.aba.modules.timesheets.models import Timesheet, TimesheetEntry
from app.aba.utils import parse_date, parse_decimal, quantize_money

from .models import Invoice, InvoiceAdjustment, InvoiceEntry, Payment

if TYPE_CHECKING:
    from app.aba.models import User

DEFAULT_VIEW_TOKEN_DAYS = 30


class InvoiceStateError(ValueError):
    pass


def recalculate_balance(invoice: Invoice) -> None:
    """outstanding = total + adjustments - paid; status follows the balance unless void."""
    total = Decimal(invoice.total_amount or 0)
    adjustments = Decimal(invoice.adjustments or 0)
    paid = Decimal(invoice.paid_amount or 0)
    invoice.outstanding = quantize_money(total + adjustments - paid)
    if invoice.status == INVOICE_VOID:
        return
    if invoice.outstanding <= 0:
        invoice.status = INVOICE_PAID
    elif paid > 0:
        invoice.status = INVOICE_PARTIALLY_PAID
    elif invoice.status in (INVOICE_PAID, INVOICE_PARTIALLY_PAID):
        invoice.status = INVOICE_SENT


def _assert_not_void(invoice: Invoice, action: str) -> None:
    if invoice.status == INVOICE_VOID or invoice.deleted_at is not None:
        raise InvoiceStateError(f"Cannot {action} a void invoice.")


def record_payment(s: Session, invoice: Invoice, payload: Mapping, user: "User") -> Payment:
    _assert_not_void(invoice, "record a payment on")
    amount = quantize_money(parse_decimal(payload.get("amount"), "Amount"))
    if amount <= 0:
        raise ValueError("Amount must be greater than 0.")
    try:
        payment_date = parse_date(payload.get("payment_date"))
    except ValueError:
        raise ValueError("Invalid payment date.") from None
    if payment_date is None:
        raise ValueError("Payment date is required.")

    payment = Payment(
        invoice_id=invoice.id,
        amount=amount,
        payment_date=payment_date,
        reference_number=(str(payload.get("reference_number") or "").strip() or None),
        notes=(str(payload.get("notes") or "").strip() or None),
        created_by_user_id=user.id,
    )
    invoice.payments.append(payment)
    old_status = invoice.status
    invoice.paid_amount = quantize_money(Decimal(invoice.paid_amount or 0) + amount)
    recalculate_balance(invoice)
    invoice.updated_at = utcnow()
    s.flush()

    record_event(
        s,
        actor=user,
        action="invoice.payment",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={
            "invoice_number": invoice.invoice_number,
            "payment_id": payment.id,
            "amount": str(amount),
            "outstanding": str(invoice.outstanding),
            "changes": {"status": {"old": old_status, "new": invoice.status}} if old_status != invoice.status else {},
        },
    )
    return payment


def record_adjustment(s: Session, invoice: Invoice, payload: Mapping, user: "User") -> InvoiceAdjustment:
    _assert_not_void(invoice, "adjust")
    amount = quantize_money(parse_decimal(payload.get("amount"), "Amount"))
    if amount == 0:
        raise ValueError("Adjustment amount cannot be zero.")
    reason = str(payload.get("reason") or "").strip()
    if not reason:
        raise ValueError("Reason is required.")

    adj = InvoiceAdjustment(invoice_id=invoice.id, amount=amount, reason=reason, created_by_user_id=user.id)
    invoice.adjustment_records.append(adj)
    old_status = invoice.status
    invoice.adjustments = quantize_money(Decimal(invoice.adjustments or 0) + amount)
    recalculate_balance(invoice)
    invoice.updated_at = utcnow()
    s.flush()

    record_event(
        s,
        actor=user,
        action="invoice.adjustment",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        reason=reason,
        metadata={
            "invoice_number": invoice.invoice_number,
            "adjustment_id": adj.id,
            "amount": str(amount),
            "outstanding": str(invoice.outstanding),
            "changes": {"status": {"old": old_status, "new": invoice.status}} if old_status != invoice.status else {},
        },
    )
    return adj


def approve_invoice(s: Session, invoice: Invoice, user: "User", token_days: int = DEFAULT_VIEW_TOKEN_DAYS) -> Invoice:
    """DRAFT/READY -> SENT, with a public view token."""
    _assert_not_void(invoice, "approve")
    if invoice.status not in (INVOICE_DRAFT, INVOICE_READY):
        raise InvoiceStateError(f"Only draft or ready invoices can be approved (status: {invoice.status}).")
    now = utcnow()
    old_status = invoice.status
    invoice.status = INVOICE_SENT
    invoice.sent_at = now
    invoice.view_token = secrets.token_hex(32)
    invoice.token_expires_at = now + timedelta(days=token_days)
    invoice.updated_at = now
    record_event(
        s,
        actor=user,
        action="invoice.approve",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={
            "invoice_number": invoice.invoice_number,
            "changes": {"status": {"old": old_status, "new": invoice.status}},
        },
    )
    return invoice


def void_invoice(s: Session, invoice: Invoice, user: "User", reason: str | None = None) -> dict:
    """
    Soft-delete and mark VOID. Billed entries/timesheets are released for re-invoicing
    unless the invoice has payments (those stay linked for the audit trail).
    """
    if invoice.deleted_at is not None:
        raise InvoiceStateError("Invoice is already void.")
    now = utcnow()
    old_status = invoice.status
    invoice.status = INVOICE_VOID
    invoice.deleted_at = now
    invoice.updated_at = now

    released_entries = 0
    released_timesheets = 0
    if not invoice.payments:
        entry_ids = [e.timesheet_entry_id for e in invoice.entries if e.timesheet_entry_id is not None]
        if entry_ids:
            released_entries = (
                s.query(TimesheetEntry)
                .filter(TimesheetEntry.id.in_(entry_ids))
                .update({TimesheetEntry.invoiced: False}, synchronize_session="fetch")
            )
        released_timesheets = _relink_timesheets(s, invoice)

    record_event(
        s,
        actor=user,
        action="invoice.void",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        reason=(reason or "").strip() or None,
        metadata={
            "invoice_number": invoice.invoice_number,
            "released_entries": released_entries,
            "released_timesheets": released_timesheets,
            "changes": {"status": {"old": old_status, "new": invoice.status}},
        },
    )
    return {"released_entries": released_entries, "released_timesheets": released_timesheets}


def _relink_timesheets(s: Session, invoice: Invoice) -> int:
    """
    Point each timesheet billed on `invoice` at its latest other live invoice, if any.
    A timesheet spanning two periods stays invoiced until both invoices are void.
    Returns how many timesheets were fully released.
    """
    ts_ids = {line.timesheet_id for line in invoice.entries if line.timesheet_id is not None}
    ts_ids.update(tid for (tid,) in s.query(Timesheet.id).filter(Timesheet.invoice_id == invoice.id))
    released = 0
    for ts in s.query(Timesheet).filter(Timesheet.id.in_(ts_ids)).order_by(Timesheet.id):
        other = (
            s.query(Invoice.id)
            .join(InvoiceEntry, InvoiceEntry.invoice_id == Invoice.id)
            .filter(
                InvoiceEntry.timesheet_id == ts.id,
                Invoice.id != invoice.id,
                Invoice.deleted_at.is_(None),
            )
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .first()
        )
        if other is not None:
            ts.invoice_id = other[0]
            continue
        if ts.invoice_id is not None or ts.invoiced_at is not None:
            released += 1
        ts.invoice_id = None
        ts.invoiced_at = None
    return released


def get_public_invoice(s: Session, invoice_id: int, token: str | None) -> Invoice | None:
    """Invoice for the public view link, or None when the token is wrong or expired."""
    if not token:
        return None
    invoice = s.get(Invoice, invoice_id)
    if invoice is None or invoice.deleted_at is not None or not invoice.view_token:
        return None
    if not secrets.compare_digest(invoice.view_token, token):
        return None
    if invoice.token_expires_at is None or invoice.token_expires_at < utcnow():
        return None
    return invoice
