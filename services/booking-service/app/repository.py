from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from .domain import ACTIVE_STATUSES, CONFIRMED
from .errors import NotFound
from .models import Booking


def get_booking(s: Session, booking_pk: int) -> Booking:
    booking = s.get(Booking, booking_pk)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


def active_bookings_on(s: Session, vehicle_id: str, day: date, vehicle_type: str | None = None) -> list[Booking]:
    """Pending/confirmed bookings for one vehicle starting on `day`."""
    q = (
        s.query(Booking)
        .filter(Booking.vehicle_id == vehicle_id)
        .filter(Booking.start_date == day)
        .filter(Booking.status.in_(ACTIVE_STATUSES))
    )
    if vehicle_type:
        q = q.filter(Booking.vehicle_type == vehicle_type)
    return q.order_by(Booking.start_time, Booking.id).all()


def compare_and_set_status(s: Session, booking_pk: int, expected: str, values: dict[str, Any]) -> bool:
    """
    Apply `values` only if the persisted status is still `expected`.

    Returns False when another writer got there first; nothing is written in
    that case. The caller owns the commit.
    """
    result = s.execute(
        update(Booking)
        .where(Booking.id == booking_pk)
        .where(Booking.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def compare_and_set_refund(s: Session, booking_pk: int, expected: str, values: dict[str, Any]) -> bool:
    result = s.execute(
        update(Booking)
        .where(Booking.id == booking_pk)
        .where(Booking.refund_status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def latch_reminder(s: Session, booking_pk: int, at: datetime) -> bool:
    """Flip `reminder_sent` false -> true once; a second call is a no-op."""
    result = s.execute(
        update(Booking)
        .where(Booking.id == booking_pk)
        .where(or_(Booking.reminder_sent.is_(None), Booking.reminder_sent.is_(False)))
        .values(reminder_sent=True, reminder_sent_at=at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def awaiting_reminder(s: Session) -> list[Booking]:
    return (
        s.query(Booking)
        .filter(Booking.status == CONFIRMED)
        .filter(or_(Booking.reminder_sent.is_(None), Booking.reminder_sent.is_(False)))
        .order_by(Booking.start_date, Booking.start_time)
        .all()
    )


def bookings_for_user(s: Session, user_id: str) -> list[Booking]:
    return s.query(Booking).filter(Booking.user_id == user_id).order_by(Booking.id.desc()).all()


def all_bookings(s: Session, status: str | None = None) -> list[Booking]:
    q = s.query(Booking)
    if status:
        q = q.filter(Booking.status == status)
    return q.order_by(Booking.id.desc()).all()
