from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.orm import Session

from .clock import format_minutes, minutes_from_midnight, to_ist, window_start
from .errors import PastBooking, SlotConflict
from .models import Booking
from .repository import active_bookings_on

# Handover and cleaning time, added around the requested window only.
BUFFER_MINUTES = 60


@dataclass(frozen=True)
class ConflictResult:
    conflict: bool
    existing: Booking | None = None
    message: str | None = None


def _conflict_message(existing: Booking, end_minutes: int) -> str:
    d = existing.start_date
    return (
        f"This vehicle is already booked on {d.day} {d:%B %Y} from {existing.start_time} "
        f"to {format_minutes(end_minutes)}. Please try another vehicle or choose a different "
        "time slot. (Note: A 1-hour gap is required before and after each booking)"
    )


def has_conflict(
    s: Session,
    vehicle_id: str,
    start_date: date,
    start_time: str,
    duration_hours: int,
    *,
    vehicle_type: str | None = None,
) -> ConflictResult:
    """
    Compare a candidate window against the vehicle's active bookings that day.

    The candidate is widened by the buffer on both sides; an existing booking
    clashes when its half-open interval intersects the widened one. Existing
    bookings are not widened.
    """
    start = minutes_from_midnight(start_time)
    end = start + duration_hours * 60
    buffer_start = start - BUFFER_MINUTES
    buffer_end = end + BUFFER_MINUTES

    for existing in active_bookings_on(s, vehicle_id, start_date, vehicle_type=vehicle_type):
        if not existing.start_time:
            continue
        existing_start = minutes_from_midnight(existing.start_time)
        existing_end = existing_start + existing.duration_hours * 60
        if existing_start < buffer_end and existing_end > buffer_start:
            return ConflictResult(conflict=True, existing=existing, message=_conflict_message(existing, existing_end))

    return ConflictResult(conflict=False)


def ensure_not_past(start_date: date, start_time: str, now: datetime) -> None:
    # Minute resolution: a slot starting this very minute is still bookable.
    current = to_ist(now).replace(second=0, microsecond=0)
    if window_start(start_date, start_time) < current:
        raise PastBooking()


def check_slot(
    s: Session,
    vehicle_id: str,
    start_date: date,
    start_time: str,
    duration_hours: int,
    now: datetime,
    *,
    vehicle_type: str | None = None,
) -> None:
    """Raise PastBooking or SlotConflict; return quietly when the slot is free."""
    ensure_not_past(start_date, start_time, now)
    result = has_conflict(s, vehicle_id, start_date, start_time, duration_hours, vehicle_type=vehicle_type)
    if result.conflict:
        raise SlotConflict(result.message or "Requested slot is not available", conflicting=result.existing)
