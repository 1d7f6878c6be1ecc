from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.aba.modules.invoices.billing import (
    RateError,
    calculate_entry_totals,
    calculate_invoice_totals,
    minutes_to_units,
    resolve_rate,
)


@pytest.mark.parametrize(
    "minutes,units",
    [(60, "4.00"), (15, "1.00"), (7, "0.47"), (10, "0.67"), (0, "0"), (None, "0")],
)
def test_minutes_to_units(minutes, units):
    assert minutes_to_units(minutes) == Decimal(units)


def test_direct_entry_billed_at_rate():
    t = calculate_entry_totals(60, "DR", Decimal("20.00"))
    assert t.units == Decimal("4.00")
    assert t.billable_units == Decimal("4.00")
    assert t.amount == Decimal("80.00")


def test_supervision_free_on_regular_timesheets():
    t = calculate_entry_totals(30, "sv", Decimal("20.00"), is_regular=True)
    assert t.units == Decimal("2.00")
    assert t.billable_units == 0
    assert t.amount == Decimal("0.00")


def test_supervision_billed_on_bcba_timesheets():
    t = calculate_entry_totals(30, "SV", Decimal("30.00"), is_regular=False)
    assert t.amount == Decimal("60.00")


def test_invoice_totals_sum_rounded_lines():
    entries = [
        {"minutes": 7, "notes": "DR"},
        SimpleNamespace(minutes=7, notes=None),
        {"minutes": 45, "notes": "SV"},
    ]
    totals = calculate_invoice_totals(entries, Decimal("10.00"))
    # 0.47 units x $10 per 7-minute entry; SV not charged
    assert totals.minutes == 59
    assert totals.units == Decimal("3.94")
    assert totals.billable_units == Decimal("0.94")
    assert totals.amount == Decimal("9.40")


def test_resolve_rate_prefers_kind_specific_rate():
    ins = SimpleNamespace(
        name="Plan",
        rate_per_unit=Decimal("15.00"),
        regular_rate_per_unit=Decimal("20.00"),
        bcba_rate_per_unit=None,
    )
    assert resolve_rate(ins, is_bcba=False) == Decimal("20.00")
    assert resolve_rate(ins, is_bcba=True) == Decimal("15.00")


def test_resolve_rate_errors():
    with pytest.raises(RateError):
        resolve_rate(None, is_bcba=False)
    ins = SimpleNamespace(name="Zero", rate_per_unit=Decimal("0"), regular_rate_per_unit=None, bcba_rate_per_unit=None)
    with pytest.raises(RateError):
        resolve_rate(ins, is_bcba=False)
