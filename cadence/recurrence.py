"""Calendar-aware day-of-month recurrence."""

from __future__ import annotations

import calendar
from datetime import datetime


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _clamped(reference: datetime, year: int, month: int, day_of_month: int) -> datetime:
    day = min(day_of_month, last_day_of_month(year, month))
    return datetime(year, month, day, tzinfo=reference.tzinfo)


def next_occurrence(from_time: datetime, day_of_month: int) -> datetime:
    """Return the first midnight strictly after ``from_time`` on ``day_of_month``.

    Months shorter than ``day_of_month`` clamp to their last day, so day 31
    lands on Feb 28/29, Apr 30 and so on. The result shares ``from_time``'s
    tzinfo; no other timezone is consulted.
    """
    if not 1 <= day_of_month <= 31:
        raise ValueError(f"day_of_month must be between 1 and 31, got {day_of_month}")

    candidate = _clamped(from_time, from_time.year, from_time.month, day_of_month)
    if candidate <= from_time or candidate.day < from_time.day:
        if from_time.month == 12:
            year, month = from_time.year + 1, 1
        else:
            year, month = from_time.year, from_time.month + 1
        candidate = _clamped(from_time, year, month, day_of_month)
    return candidate


def idempotency_key(schedule_id: str, day_of_month: int, when: datetime) -> str:
    """Key allowing one job per schedule chain per calendar month."""
    return f"{schedule_id}:{day_of_month:02d}:{when.year:04d}-{when.month:02d}"
