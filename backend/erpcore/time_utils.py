# Overview: UTC time helpers; storage is UTC-naive, the API speaks ISO-8601 with a trailing Z.

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional

from .errors import ValidationError


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str], *, field: str = "datetime", end_of_day: bool = False) -> Optional[datetime]:
    """
    ISO-8601 text -> UTC-naive datetime; None/blank -> None.

    Offsets and 'Z' are converted to UTC, naive values are taken as UTC.
    A bare date ("2026-10-16") means the start of that day, or its last
    microsecond with end_of_day so inclusive upper bounds cover the day.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"

    try:
        if len(text) == 10:
            return datetime.combine(date.fromisoformat(text), time.max if end_of_day else time.min)
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date or datetime")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 in UTC with 'Z'; naive values are already UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat() + "Z"
