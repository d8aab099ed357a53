from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from functools import lru_cache
from typing import Literal

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .clients import Notifier, PaymentGateway, VehicleCatalog
from .clock import to_ist
from .db import default_engine, session
from .domain import COMPLETED, CONFIRMED
from .errors import BookingError
from .lifecycle import BookingEngine
from .models import Booking
from .reminders import USE_INTERNAL_CRON, reminder_loop
from .repository import all_bookings, bookings_for_user
from .security import ADMIN_ROLES, require_cron_secret, require_roles

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Booking Lifecycle & Refund Service",
    version="0.1.0",
    description="Vehicle rental reservations: slot conflict checks, booking status transitions, refunds and pickup reminders.",
)

CUSTOMER_ROLES = ("guest", *ADMIN_ROLES)


@lru_cache(maxsize=1)
def _default_booking_engine() -> BookingEngine:
    return BookingEngine(default_engine(), VehicleCatalog(), PaymentGateway(), Notifier())


def get_booking_engine() -> BookingEngine:
    return _default_booking_engine()


@app.exception_handler(BookingError)
async def _booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def _value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": str(exc)})


_stop_reminders: asyncio.Event | None = None


@app.on_event("startup")
async def _startup():
    global _stop_reminders
    if not USE_INTERNAL_CRON:
        logger.info("Internal reminder scheduler disabled; use GET /admin/cron/reminders?secret=...")
        return
    engine = app.dependency_overrides.get(get_booking_engine, get_booking_engine)()
    _stop_reminders = asyncio.Event()
    asyncio.create_task(reminder_loop(engine.reminders, _stop_reminders))
    logger.info("Internal reminder scheduler active")


@app.on_event("shutdown")
async def _shutdown():
    if _stop_reminders is not None:
        _stop_reminders.set()


#
# Schemas
#


class SlotRequest(BaseModel):
    vehicle_type: str = Field(min_length=1, description="bike | car | scooty")
    vehicle_id: str = Field(min_length=1)
    start_date: date
    start_time: str = Field(description="Pickup time, HH:mm (24h, IST)")
    duration_hours: int = Field(gt=0, le=24 * 30)


class CreateBookingRequest(SlotRequest):
    payment_ref: str | None = Field(default=None, description="Gateway payment id for the advance")


class AdminCreateBookingRequest(CreateBookingRequest):
    user_id: str = Field(min_length=1)


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class AdminCancelRequest(BaseModel):
    refund_details: dict | None = None


class RefundDetailsRequest(BaseModel):
    refund_details: dict


class RefundOut(BaseModel):
    amount: int | None
    status: str
    deduction: int | None
    external_ref: str | None
    details: dict | None
    timestamp: datetime | None


class BookingOut(BaseModel):
    id: int
    booking_id: str
    user_id: str
    vehicle_type: str
    vehicle_id: str
    start_date: date
    start_time: str
    duration_hours: int
    status: str
    total_amount: int
    advance_payment: int
    remaining_amount: int
    payment_ref: str | None
    confirmation_timestamp: datetime | None
    cancelled_timestamp: datetime | None
    rejection_reason: str | None
    refund: RefundOut
    reminder_sent: bool
    reminder_sent_at: datetime | None
    created_at: datetime


class CancelOut(BaseModel):
    message: str
    refund_amount: int | None
    deduction: int | None
    refund_status: str
    booking: BookingOut


class AvailabilityOut(BaseModel):
    available: bool
    message: str
    start_time: str


class SweepOut(BaseModel):
    success: bool
    checked: int
    reminders_sent: int
    errors: list[dict] | None


def _ist(dt: datetime | None) -> datetime | None:
    return to_ist(dt) if dt is not None else None


def _booking_out(engine: BookingEngine, b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        booking_id=b.booking_id,
        user_id=b.user_id,
        vehicle_type=b.vehicle_type,
        vehicle_id=b.vehicle_id,
        start_date=b.start_date,
        start_time=b.start_time,
        duration_hours=b.duration_hours,
        status=engine.view_status(b),
        total_amount=b.total_amount,
        advance_payment=b.advance_payment,
        remaining_amount=b.remaining_amount,
        payment_ref=b.payment_ref,
        confirmation_timestamp=_ist(b.confirmation_timestamp),
        cancelled_timestamp=_ist(b.cancelled_timestamp),
        rejection_reason=b.rejection_reason,
        refund=RefundOut(
            amount=b.refund_amount,
            status=b.refund_status,
            deduction=b.refund_deduction,
            external_ref=b.refund_id,
            details=b.refund_details,
            timestamp=_ist(b.refund_timestamp),
        ),
        reminder_sent=bool(b.reminder_sent),
        reminder_sent_at=_ist(b.reminder_sent_at),
        created_at=_ist(b.created_at),
    )


#
# Customer routes
#


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/bookings/check-availability", response_model=AvailabilityOut)
def check_availability(
    payload: SlotRequest,
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*CUSTOMER_ROLES)),
):
    start_time = engine.check_availability(
        payload.vehicle_id,
        payload.start_date,
        payload.start_time,
        payload.duration_hours,
        vehicle_type=payload.vehicle_type,
    )
    return AvailabilityOut(available=True, message="Vehicle is available", start_time=start_time)


@app.post("/bookings", response_model=BookingOut, status_code=201)
async def create_booking(
    payload: CreateBookingRequest,
    engine: BookingEngine = Depends(get_booking_engine),
    principal=Depends(require_roles(*CUSTOMER_ROLES)),
):
    booking = await engine.create_booking(
        user_id=str(principal["sub"]),
        vehicle_type=payload.vehicle_type,
        vehicle_id=payload.vehicle_id,
        start_date=payload.start_date,
        start_time=payload.start_time,
        duration_hours=payload.duration_hours,
        flow="direct",
        payment_ref=payload.payment_ref,
    )
    return _booking_out(engine, booking)


@app.get("/bookings/user", response_model=list[BookingOut])
def list_my_bookings(
    engine: BookingEngine = Depends(get_booking_engine),
    principal=Depends(require_roles(*CUSTOMER_ROLES)),
):
    with session(engine.engine) as s:
        rows = bookings_for_user(s, str(principal["sub"]))
    return [_booking_out(engine, b) for b in rows]


@app.get("/bookings/{booking_pk}", response_model=BookingOut)
def get_my_booking(
    booking_pk: int,
    engine: BookingEngine = Depends(get_booking_engine),
    principal=Depends(require_roles(*CUSTOMER_ROLES)),
):
    return _booking_out(engine, engine.get(booking_pk, user_id=str(principal["sub"])))


@app.post("/bookings/{booking_pk}/cancel", response_model=CancelOut)
async def cancel_my_booking(
    booking_pk: int,
    engine: BookingEngine = Depends(get_booking_engine),
    principal=Depends(require_roles(*CUSTOMER_ROLES)),
):
    booking = await engine.cancel(booking_pk, user_id=str(principal["sub"]))
    return CancelOut(
        message="Booking cancelled successfully",
        refund_amount=booking.refund_amount,
        deduction=booking.refund_deduction,
        refund_status=booking.refund_status,
        booking=_booking_out(engine, booking),
    )


@app.post("/bookings/{booking_pk}/refund-details", response_model=BookingOut)
def submit_refund_details(
    booking_pk: int,
    payload: RefundDetailsRequest,
    engine: BookingEngine = Depends(get_booking_engine),
    principal=Depends(require_roles(*CUSTOMER_ROLES)),
):
    booking = engine.submit_refund_details(booking_pk, str(principal["sub"]), payload.refund_details)
    return _booking_out(engine, booking)


#
# Admin routes
#


@app.post("/admin/bookings", response_model=BookingOut, status_code=201)
async def admin_create_booking(
    payload: AdminCreateBookingRequest,
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*ADMIN_ROLES)),
):
    booking = await engine.create_booking(
        user_id=payload.user_id,
        vehicle_type=payload.vehicle_type,
        vehicle_id=payload.vehicle_id,
        start_date=payload.start_date,
        start_time=payload.start_time,
        duration_hours=payload.duration_hours,
        flow="manual",
        payment_ref=payload.payment_ref,
    )
    return _booking_out(engine, booking)


@app.get("/admin/bookings", response_model=list[BookingOut])
def admin_list_bookings(
    status: Literal["pending", "confirmed", "rejected", "cancelled", "completed"] | None = None,
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*ADMIN_ROLES)),
):
    stored = CONFIRMED if status == COMPLETED else status
    with session(engine.engine) as s:
        rows = all_bookings(s, status=stored)
    out = [_booking_out(engine, b) for b in rows]
    if status:
        out = [b for b in out if b.status == status]
    return out


@app.get("/admin/bookings/{booking_pk}", response_model=BookingOut)
def admin_get_booking(
    booking_pk: int,
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*ADMIN_ROLES)),
):
    return _booking_out(engine, engine.get(booking_pk))


@app.post("/admin/bookings/{booking_pk}/confirm", response_model=BookingOut)
async def admin_confirm_booking(
    booking_pk: int,
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*ADMIN_ROLES)),
):
    return _booking_out(engine, await engine.confirm(booking_pk))


@app.post("/admin/bookings/{booking_pk}/reject", response_model=BookingOut)
async def admin_reject_booking(
    booking_pk: int,
    payload: RejectRequest,
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*ADMIN_ROLES)),
):
    return _booking_out(engine, await engine.reject(booking_pk, payload.reason))


@app.post("/admin/bookings/{booking_pk}/cancel", response_model=CancelOut)
async def admin_cancel_booking(
    booking_pk: int,
    payload: AdminCancelRequest | None = None,
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*ADMIN_ROLES)),
):
    booking = await engine.cancel(booking_pk, refund_details=payload.refund_details if payload else None)
    return CancelOut(
        message="Booking cancelled successfully",
        refund_amount=booking.refund_amount,
        deduction=booking.refund_deduction,
        refund_status=booking.refund_status,
        booking=_booking_out(engine, booking),
    )


@app.post("/admin/bookings/{booking_pk}/refund-complete", response_model=BookingOut)
async def admin_complete_refund(
    booking_pk: int,
    engine: BookingEngine = Depends(get_booking_engine),
    principal=Depends(require_roles(*ADMIN_ROLES)),
):
    return _booking_out(engine, await engine.complete_refund(booking_pk, completed_by=str(principal["sub"])))


@app.get("/admin/cron/reminders", response_model=SweepOut)
async def cron_reminder_sweep(
    _secret=Depends(require_cron_secret),
    engine: BookingEngine = Depends(get_booking_engine),
):
    logger.info("External cron triggered reminder sweep")
    result = await engine.reminders.sweep()
    return SweepOut(
        success=result.success, checked=result.checked, reminders_sent=result.reminders_sent, errors=result.errors or None
    )


@app.post("/admin/cron/reminders/manual", response_model=SweepOut)
async def manual_reminder_sweep(
    engine: BookingEngine = Depends(get_booking_engine),
    _principal=Depends(require_roles(*ADMIN_ROLES)),
):
    logger.info("Manual reminder sweep triggered by admin")
    result = await engine.reminders.sweep()
    return SweepOut(
        success=result.success, checked=result.checked, reminders_sent=result.reminders_sent, errors=result.errors or None
    )
