"""Datetime helpers for billing periods"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

# Length of one billing period for each cycle. Yearly plans refresh monthly;
# their true end is tracked separately in subscription_end.
PERIOD_STEPS = {
    "daily": relativedelta(days=1),
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(months=1),
}

TERM_LENGTHS = {
    "yearly": relativedelta(years=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_period_end(start: datetime, billing_cycle: str) -> Optional[datetime]:
    """End of the period starting at `start`, or None for lifetime plans"""
    step = PERIOD_STEPS.get(billing_cycle)
    if step is None:
        return None
    return as_utc(start) + step


def term_end(start: datetime, billing_cycle: str) -> Optional[datetime]:
    """End of the prepaid term (yearly only)"""
    length = TERM_LENGTHS.get(billing_cycle)
    if length is None:
        return None
    return as_utc(start) + length


def advance_period(period_end: datetime, billing_cycle: str, now: datetime,
                   anchor: Optional[datetime] = None):
    """Advance a lapsed period by whole cycles until it contains `now`.

    Returns (new_period_start, new_period_end). Boundaries are computed as
    anchor + n * step rather than by stepping from the previous end, so a
    period anchored on the 31st goes Jan 31, Feb 28, Mar 31 instead of
    drifting to the 28th. Catching up over several missed cycles in one step
    keeps a re-run of the rollover job a no-op.
    """
    step = PERIOD_STEPS[billing_cycle]
    period_end = as_utc(period_end)
    now = as_utc(now)
    base = as_utc(anchor) or period_end
    n = 1
    end = base + step * n
    while end <= now or end <= period_end:
        n += 1
        end = base + step * n
    return max(base + step * (n - 1), period_end), end


def days_from(now: datetime, days: int) -> datetime:
    return as_utc(now) + timedelta(days=days)
