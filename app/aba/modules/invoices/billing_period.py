"""
Weekly billing periods in the billing timezone (America/New_York by default).

A period runs Monday 00:00 through the following Monday 23:59:59.999999 local
time (both Mondays included). The automatic run fires Tuesday 07:00 local and
bills the period that ended the day before.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from app.aba.constants import DEFAULT_TIMEZONE

RUN_WEEKDAY = 1  # Tuesday
RUN_HOUR = 7


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime  # aware, billing timezone
    end: datetime  # aware, billing timezone
    label: str

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()

    @property
    def start_utc(self) -> datetime:
        return self.start.astimezone(timezone.utc)

    @property
    def end_utc(self) -> datetime:
        return self.end.astimezone(timezone.utc)

    def contains(self, d: date) -> bool:
        return self.start_date <= d <= self.end_date

    def to_dict(self) -> dict:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "start": self.start_utc.isoformat(),
            "end": self.end_utc.isoformat(),
            "label": self.label,
        }


def _zone(tz: str | ZoneInfo | None) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    return ZoneInfo(tz or DEFAULT_TIMEZONE)


def _fmt_day(d: date) -> str:
    return f"{d.strftime('%a')} {d.month}/{d.day}/{d.year}"


def format_billing_period(start: date | datetime, end: date | datetime, tz: str | ZoneInfo | None = None) -> str:
    """`EEE M/d/yyyy - EEE M/d/yyyy`; aware datetimes are shown in the billing timezone."""
    zone = _zone(tz)

    def _local(v: date | datetime) -> date:
        if isinstance(v, datetime):
            if v.tzinfo is not None:
                return v.astimezone(zone).date()
            return v.date()
        return v

    return f"{_fmt_day(_local(start))} - {_fmt_day(_local(end))}"


def billing_period_from_dates(start_date: date, end_date: date, tz: str | ZoneInfo | None = None) -> BillingPeriod:
    if end_date < start_date:
        raise ValueError("End date must be on or after start date.")
    zone = _zone(tz)
    start = datetime.combine(start_date, time.min, tzinfo=zone)
    end = datetime.combine(end_date, time.max, tzinfo=zone)
    return BillingPeriod(start=start, end=end, label=format_billing_period(start_date, end_date))


def calculate_weekly_billing_period(reference: datetime | None = None, tz: str | ZoneInfo | None = None) -> BillingPeriod:
    """
    The most recent fully-ended Monday-to-Monday period relative to `reference`
    (default: now). On a Monday the current day has not ended, so the period
    ends on the previous Monday.
    """
    zone = _zone(tz)
    if reference is None:
        reference = datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    local_day = reference.astimezone(zone).date()

    days_back = local_day.weekday() or 7
    end_day = local_day - timedelta(days=days_back)
    start_day = end_day - timedelta(days=7)
    return billing_period_from_dates(start_day, end_day, zone)


def next_billing_period(now: datetime | None = None, tz: str | ZoneInfo | None = None) -> BillingPeriod:
    """The period the next Tuesday 07:00 run will bill."""
    zone = _zone(tz)
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(zone)

    days_ahead = (RUN_WEEKDAY - local_now.weekday()) % 7
    if days_ahead == 0 and local_now.hour >= RUN_HOUR:
        days_ahead = 7
    run_day = local_now.date() + timedelta(days=days_ahead)
    run_at = datetime.combine(run_day, time(RUN_HOUR), tzinfo=zone)
    return calculate_weekly_billing_period(run_at, zone)


def week_start(d: date) -> date:
    """Monday of the calendar week containing `d`."""
    return d - timedelta(days=d.weekday())


def week_end(d: date) -> date:
    """Sunday of the calendar week containing `d`."""
    return week_start(d) + timedelta(days=6)


def week_key(d: date) -> str:
    return week_start(d).isoformat()
