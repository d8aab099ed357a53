from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone

# India Standard Time has no DST; a fixed offset is exact.
IST = timezone(timedelta(hours=5, minutes=30), name="IST")

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


def now_ist() -> datetime:
    return datetime.now(tz=IST)


def as_aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_ist(dt: datetime) -> datetime:
    return as_aware(dt).astimezone(IST)


def to_utc(dt: datetime) -> datetime:
    # Storage form for every timestamp column.
    return as_aware(dt).astimezone(timezone.utc)


def normalize_hhmm(value: str) -> str:
    """Accept `H:mm` or `HH:mm` (24h) and return zero-padded `HH:mm`."""
    m = _HHMM.match((value or "").strip())
    if m is None:
        raise ValueError("Invalid time format. Please use HH:mm format (24-hour)")
    return f"{int(m.group(1)):02d}:{m.group(2)}"


def minutes_from_midnight(hhmm: str) -> int:
    hh, mm = hhmm.split(":")
    return int(hh) * 60 + int(mm)


def format_minutes(total: int) -> str:
    return f"{(total // 60) % 24:02d}:{total % 60:02d}"


def window_start(start_date: date, start_time: str) -> datetime:
    hh, mm = start_time.split(":")
    return datetime.combine(start_date, time(hour=int(hh), minute=int(mm)), tzinfo=IST)


def window_end(start_date: date, start_time: str, duration_hours: int) -> datetime:
    return window_start(start_date, start_time) + timedelta(hours=duration_hours)


def hours_between(start: datetime, end: datetime) -> float:
    return (as_aware(end) - as_aware(start)).total_seconds() / 3600.0
