from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BookingSequence(Base):
    """
    Single shared counter row (id=1) behind the public booking identifiers.

    Created once at deployment, never deleted, never reset per day.
    """

    __tablename__ = "booking_id_sequence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    current_value: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_vehicle_day", "vehicle_type", "vehicle_id", "start_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String, unique=True, index=True)  # RHYYMMDD-NNN

    user_id: Mapped[str] = mapped_column(String, index=True)

    vehicle_type: Mapped[str] = mapped_column(String)  # bike|car|scooty
    vehicle_id: Mapped[str] = mapped_column(String, index=True)

    start_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[str] = mapped_column(String)  # HH:MM, IST wall clock
    duration_hours: Mapped[int] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String, index=True)  # pending|confirmed|rejected|cancelled

    total_amount: Mapped[int] = mapped_column(Integer, default=0)
    advance_payment: Mapped[int] = mapped_column(Integer, default=0)
    remaining_amount: Mapped[int] = mapped_column(Integer, default=0)
    payment_ref: Mapped[str | None] = mapped_column(String, index=True)

    confirmation_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(String)

    refund_amount: Mapped[int | None] = mapped_column(Integer)
    refund_status: Mapped[str] = mapped_column(String, default="not_applicable")  # not_applicable|processing|completed
    refund_deduction: Mapped[int | None] = mapped_column(Integer)
    refund_id: Mapped[str | None] = mapped_column(String)  # gateway refund reference
    refund_details: Mapped[dict | None] = mapped_column(JSON)
    refund_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_completed_by: Mapped[str | None] = mapped_column(String)

    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
