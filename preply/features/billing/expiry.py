"""
Subscription expiry arithmetic.

Calendar-month addition in UTC. The day of month is kept where the target
month has it; past the end of a short month it rolls over into the next one
(Jan 31 + 1 month -> Mar 3, or Mar 2 in a leap year). Time of day is preserved.
"""
from datetime import datetime, timedelta
from typing import Optional

from preply.models.billing import Subscription, ensure_utc


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months to an aware datetime, in UTC."""
    if months < 0:
        raise ValueError("months must be non-negative")
    dt = ensure_utc(value)
    month = dt.month + months
    year = dt.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    # Whole months land on the 1st; the remaining days overflow naturally
    return dt.replace(year=year, month=month, day=1) + timedelta(days=dt.day - 1)


def extension_base(current: Optional[Subscription], now: datetime) -> datetime:
    """
    Where a new period starts.

    Unused time is kept: if the current row still expires in the future the
    new period starts there, otherwise at `now`. Only the expiry is compared
    here, so a row with a stale status still carries its remaining time.
    """
    now = ensure_utc(now)
    if current is not None:
        expires_at = ensure_utc(current.expires_at)
        if expires_at > now:
            return expires_at
    return now


def compute_new_expiry(current: Optional[Subscription], now: datetime, duration_months: int) -> datetime:
    return add_months(extension_base(current, now), duration_months)
