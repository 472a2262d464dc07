from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from academy_billing.core.config import settings


def resolve_zone(name: str | None) -> ZoneInfo:
    return ZoneInfo(name or settings.default_timezone)


def today_in_zone(tz_name: str | None = None, *, now: datetime | None = None) -> date:
    """Calendar date at the given zone's wall clock.

    ``now`` is a naive UTC timestamp (the storage convention) or an aware one.
    """
    zone = resolve_zone(tz_name)
    current = now or datetime.utcnow()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(zone).date()


def local_midnight_utc(day: date, tz_name: str | None = None) -> datetime:
    """Naive UTC instant of local midnight for ``day``."""
    zone = resolve_zone(tz_name)
    local = datetime.combine(day, time.min, tzinfo=zone)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def next_billing_date(current_due: date, billing_day: int) -> date:
    """One calendar month after ``current_due`` on ``billing_day``.

    Days past the end of the target month are clamped to its last day, so a
    billing day of 31 after 2024-01-31 yields 2024-02-29.
    """
    if not 1 <= billing_day <= 31:
        raise ValueError(f"billing_day must be between 1 and 31, got {billing_day}")
    return current_due + relativedelta(months=1, day=billing_day)


def first_billing_date(start: date, billing_day: int) -> date:
    """First date on or after ``start`` that falls on ``billing_day`` (clamped)."""
    if not 1 <= billing_day <= 31:
        raise ValueError(f"billing_day must be between 1 and 31, got {billing_day}")
    candidate = start + relativedelta(day=billing_day)
    if candidate < start:
        candidate = start + relativedelta(months=1, day=billing_day)
    return candidate


def parse_hhmm(value: str) -> int:
    """Minutes after midnight for an ``HH:MM`` string."""
    hours, minutes = value.strip().split(":", 1)
    hh, mm = int(hours), int(minutes)
    if not (0 <= hh < 24 and 0 <= mm < 60):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hh * 60 + mm


def is_in_quiet_hours(quiet_start: str, quiet_end: str, now: datetime, tz_name: str | None = None) -> bool:
    """True when the local wall-clock time of ``now`` lies inside the quiet window.

    Windows may cross midnight (21:00-08:00). Equal bounds mean never quiet.
    """
    start = parse_hhmm(quiet_start)
    end = parse_hhmm(quiet_end)
    if start == end:
        return False
    current = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
    local = current.astimezone(resolve_zone(tz_name))
    minutes = local.hour * 60 + local.minute
    if start < end:
        return start <= minutes < end
    return minutes >= start or minutes < end


def next_quiet_hours_end(quiet_end: str, now: datetime, tz_name: str | None = None) -> datetime:
    """Naive UTC instant of the next local ``quiet_end`` strictly after ``now``."""
    zone = resolve_zone(tz_name)
    current = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
    local_now = current.astimezone(zone)
    end_minutes = parse_hhmm(quiet_end)
    candidate = datetime.combine(
        local_now.date(),
        time(hour=end_minutes // 60, minute=end_minutes % 60),
        tzinfo=zone,
    )
    if candidate <= local_now:
        candidate = datetime.combine(
            local_now.date() + timedelta(days=1),
            candidate.timetz(),
        )
    return candidate.astimezone(timezone.utc).replace(tzinfo=None)


def period_label(due: date) -> str:
    return due.strftime("%Y-%m")
