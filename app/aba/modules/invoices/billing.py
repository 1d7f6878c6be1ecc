"""
Billing math shared by invoice generation, timesheet storage and reports.

Units: 1 unit = 15 minutes (1 hour = 4 units), rounded half-up to 2 decimals.
On regular (non-BCBA) timesheets, SV (supervision) entries keep their units but
are billed at $0. Everything else is billed units x rate.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from app.aba.constants import ENTRY_NOTE_SUPERVISION, UNIT_MINUTES
from app.aba.utils import quantize_money

if TYPE_CHECKING:
    from app.aba.modules.directory.models import Insurance

ZERO = Decimal("0")
_UNIT_PLACES = Decimal("0.01")


class RateError(ValueError):
    pass


@dataclass(frozen=True)
class EntryTotals:
    units: Decimal
    billable_units: Decimal
    amount: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    minutes: int
    units: Decimal
    billable_units: Decimal
    amount: Decimal


def minutes_to_units(minutes: int | None, unit_minutes: int = UNIT_MINUTES) -> Decimal:
    if not minutes or minutes <= 0:
        return ZERO
    return (Decimal(minutes) / Decimal(unit_minutes)).quantize(_UNIT_PLACES, rounding=ROUND_HALF_UP)


def is_supervision(notes: str | None) -> bool:
    return (notes or "").strip().upper() == ENTRY_NOTE_SUPERVISION


def calculate_entry_totals(
    minutes: int,
    notes: str | None,
    rate: Decimal,
    is_regular: bool = True,
    unit_minutes: int = UNIT_MINUTES,
) -> EntryTotals:
    units = minutes_to_units(minutes, unit_minutes)
    if is_regular and is_supervision(notes):
        return EntryTotals(units=units, billable_units=ZERO, amount=quantize_money(ZERO))
    return EntryTotals(units=units, billable_units=units, amount=quantize_money(units * Decimal(rate)))


def calculate_invoice_totals(
    entries: Iterable,
    rate: Decimal,
    is_regular: bool = True,
    unit_minutes: int = UNIT_MINUTES,
) -> InvoiceTotals:
    """
    Sum per-entry totals. `entries` are objects (or dicts) with `minutes` and `notes`.
    Amounts are rounded per entry before summing so invoice totals equal the sum of lines.
    """
    minutes = 0
    units = ZERO
    billable = ZERO
    amount = ZERO
    for e in entries:
        e_minutes = e["minutes"] if isinstance(e, dict) else e.minutes
        e_notes = e.get("notes") if isinstance(e, dict) else e.notes
        t = calculate_entry_totals(e_minutes, e_notes, rate, is_regular, unit_minutes)
        minutes += e_minutes or 0
        units += t.units
        billable += t.billable_units
        amount += t.amount
    return InvoiceTotals(minutes=minutes, units=units, billable_units=billable, amount=quantize_money(amount))


def resolve_rate(insurance: "Insurance | None", is_bcba: bool) -> Decimal:
    """Rate per unit for a timesheet kind; raises RateError when none is configured."""
    if insurance is None:
        raise RateError("No insurance assigned.")
    specific = insurance.bcba_rate_per_unit if is_bcba else insurance.regular_rate_per_unit
    rate = specific if specific is not None else insurance.rate_per_unit
    if rate is None or Decimal(rate) <= 0:
        raise RateError(f"Insurance '{insurance.name}' has no rate per unit configured.")
    return Decimal(rate)
