from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from app.aba.modules.invoices.billing_period import (
    billing_period_from_dates,
    calculate_weekly_billing_period,
    format_billing_period,
    next_billing_period,
    week_end,
    week_start,
)

NY = ZoneInfo("America/New_York")


def test_tuesday_run_bills_previous_monday_to_monday():
    period = calculate_weekly_billing_period(datetime(2025, 1, 14, 7, 0, tzinfo=NY), NY)
    assert period.start_date == date(2025, 1, 6)
    assert period.end_date == date(2025, 1, 13)
    assert period.label == "Mon 1/6/2025 - Mon 1/13/2025"
    assert period.start.hour == 0 and period.start.minute == 0
    assert period.end.hour == 23 and period.end.minute == 59


def test_monday_reference_ends_on_previous_monday():
    period = calculate_weekly_billing_period(datetime(2025, 1, 13, 12, 0, tzinfo=NY), NY)
    assert period.start_date == date(2024, 12, 30)
    assert period.end_date == date(2025, 1, 6)


def test_reference_is_converted_to_billing_timezone():
    # 03:00 UTC Tuesday is still Monday evening in New York
    period = calculate_weekly_billing_period(datetime(2025, 1, 14, 3, 0, tzinfo=timezone.utc), NY)
    assert period.end_date == date(2025, 1, 6)


def test_next_billing_period_targets_next_tuesday_run():
    before_run = next_billing_period(datetime(2025, 1, 14, 6, 0, tzinfo=NY), NY)
    assert before_run.end_date == date(2025, 1, 13)
    after_run = next_billing_period(datetime(2025, 1, 14, 8, 0, tzinfo=NY), NY)
    assert after_run.end_date == date(2025, 1, 20)


def test_custom_period_validation():
    with pytest.raises(ValueError):
        billing_period_from_dates(date(2025, 1, 10), date(2025, 1, 1), NY)
    period = billing_period_from_dates(date(2025, 1, 1), date(2025, 1, 31), NY)
    assert period.contains(date(2025, 1, 31))
    assert not period.contains(date(2025, 2, 1))


def test_week_helpers_and_label():
    assert week_start(date(2025, 1, 9)) == date(2025, 1, 6)
    assert week_end(date(2025, 1, 9)) == date(2025, 1, 12)
    assert format_billing_period(date(2025, 1, 6), date(2025, 1, 12)) == "Mon 1/6/2025 - Sun 1/12/2025"


def test_period_spanning_spring_forward_is_one_hour_shorter():
    # DST starts Sunday 2025-03-09 in New York
    period = calculate_weekly_billing_period(datetime(2025, 3, 11, 7, 0, tzinfo=NY), NY)
    assert period.start_date == date(2025, 3, 3)
    assert period.end_date == date(2025, 3, 10)
    assert period.start.utcoffset() == timedelta(hours=-5)
    assert period.end.utcoffset() == timedelta(hours=-4)
    assert period.start_utc == datetime(2025, 3, 3, 5, 0, tzinfo=timezone.utc)
    assert period.end_utc.replace(second=0, microsecond=0) == datetime(2025, 3, 11, 3, 59, tzinfo=timezone.utc)
    assert period.end_utc - period.start_utc < timedelta(days=7, hours=23)
    assert period.label == "Mon 3/3/2025 - Mon 3/10/2025"


def test_period_spanning_fall_back_keeps_local_midnight_bounds():
    # DST ends Sunday 2025-11-02 in New York
    period = calculate_weekly_billing_period(datetime(2025, 11, 4, 7, 0, tzinfo=NY), NY)
    assert (period.start_date, period.end_date) == (date(2025, 10, 27), date(2025, 11, 3))
    assert period.start_utc == datetime(2025, 10, 27, 4, 0, tzinfo=timezone.utc)
    assert period.end_utc.replace(second=0, microsecond=0) == datetime(2025, 11, 4, 4, 59, tzinfo=timezone.utc)
    assert period.end_utc - period.start_utc > timedelta(days=8)
