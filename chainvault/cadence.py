"""
Cadence - Pure Time Arithmetic

Next-occurrence computation for payroll frequencies, occurrence counting,
and remaining-time queries shared by loans and the inactivity gate.

No state. Every function takes `now` explicitly.

Occurrence k of a schedule is always `reference + k * step`, computed from the
reference point (not by repeatedly stepping the previous result), so a monthly
schedule anchored on the 31st lands on the last day of short months without
drifting to the 28th/29th/30th afterwards.
"""

import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from dateutil.relativedelta import relativedelta

from .errors import ValidationError
from .settings import VAULT_LIMITS


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"
    SPECIFIC_DATE = "specific-date"


_FIXED_DAYS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}

DAY = timedelta(days=1)

_LABELS = {
    Frequency.DAILY: "Daily",
    Frequency.WEEKLY: "Weekly",
    Frequency.BIWEEKLY: "Bi-weekly",
    Frequency.MONTHLY: "Monthly",
    Frequency.SPECIFIC_DATE: "One-time Payment",
}


def frequency_label(frequency: Frequency, custom_interval_days: Optional[int] = None) -> str:
    frequency = Frequency(frequency)
    if frequency is Frequency.CUSTOM:
        return f"Every {custom_interval_days} day(s)"
    return _LABELS[frequency]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def step_days(frequency: Frequency, custom_interval_days: Optional[int] = None) -> Optional[int]:
    """Fixed day step for the frequency, or None for calendar-month / one-shot."""
    if frequency in _FIXED_DAYS:
        return _FIXED_DAYS[frequency]
    if frequency is Frequency.CUSTOM:
        return validate_custom_interval(custom_interval_days)
    return None


def validate_custom_interval(days: Optional[int]) -> int:
    if days is None or isinstance(days, bool) or int(days) != days:
        raise ValidationError("Custom interval must be a whole number of days")
    if days < VAULT_LIMITS.MIN_CUSTOM_INTERVAL_DAYS:
        raise ValidationError(
            f"Custom interval must be at least {VAULT_LIMITS.MIN_CUSTOM_INTERVAL_DAYS} day(s), got {days}"
        )
    return int(days)


def occurrence(frequency: Frequency, reference: datetime, k: int,
               custom_interval_days: Optional[int] = None) -> datetime:
    """The k-th occurrence of a recurring frequency (k=0 is the reference itself)."""
    if frequency is Frequency.MONTHLY:
        return reference + relativedelta(months=k)
    days = step_days(frequency, custom_interval_days)
    if days is None:
        raise ValidationError(f"{frequency.value} is not a recurring frequency")
    return reference + timedelta(days=days * k)


def next_occurrence(
    frequency: Frequency,
    reference: datetime,
    now: datetime,
    custom_interval_days: Optional[int] = None,
    specific_date: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    First occurrence strictly after `now`.

    - reference > now: returned unchanged (schedule hasn't started yet)
    - specific-date: the configured instant if still in the future, else None
    """
    frequency = Frequency(frequency)
    now = ensure_utc(now)

    if frequency is Frequency.SPECIFIC_DATE:
        target = ensure_utc(specific_date if specific_date is not None else reference)
        return target if target > now else None

    reference = ensure_utc(reference)
    if reference > now:
        return reference

    if frequency is Frequency.MONTHLY:
        k = max(1, (now.year - reference.year) * 12 + (now.month - reference.month))
    else:
        days = step_days(frequency, custom_interval_days)
        k = int((now - reference) // timedelta(days=days)) + 1

    # The estimate can be off by one around month ends; settle on the smallest k > now.
    while occurrence(frequency, reference, k, custom_interval_days) <= now:
        k += 1
    while k > 1 and occurrence(frequency, reference, k - 1, custom_interval_days) > now:
        k -= 1
    return occurrence(frequency, reference, k, custom_interval_days)


def count_occurrences(
    frequency: Frequency,
    start: datetime,
    end: Optional[datetime],
    custom_interval_days: Optional[int] = None,
) -> Optional[int]:
    """
    Number of occurrences in [start, end]. None means unbounded (no end date).
    A specific-date schedule always has exactly one.
    """
    frequency = Frequency(frequency)
    if frequency is Frequency.SPECIFIC_DATE:
        return 1
    if end is None:
        return None
    start, end = ensure_utc(start), ensure_utc(end)
    if end < start:
        return 0

    if frequency is Frequency.MONTHLY:
        k = (end.year - start.year) * 12 + (end.month - start.month)
        while k > 0 and occurrence(frequency, start, k) > end:
            k -= 1
        return k + 1

    days = step_days(frequency, custom_interval_days)
    return int((end - start) // timedelta(days=days)) + 1


def days_remaining(target: datetime, now: datetime) -> int:
    """Whole days until `target`, rounded up. Negative when `target` has passed."""
    seconds = (ensure_utc(target) - ensure_utc(now)).total_seconds()
    return math.ceil(seconds / 86400)


def seconds_remaining(target: datetime, now: datetime) -> float:
    """Seconds until `target`, floored at zero."""
    return max(0.0, (ensure_utc(target) - ensure_utc(now)).total_seconds())
