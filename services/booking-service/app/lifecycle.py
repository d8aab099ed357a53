from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable

from sqlalchemy.engine import Engine

from .clock import normalize_hhmm, now_ist, to_ist, to_utc
from .conflicts import check_slot, has_conflict
from .db import session
from .domain import (
    CANCELLED,
    CONFIRMED,
    PENDING,
    REFUND_COMPLETED,
    REFUND_NOT_APPLICABLE,
    REFUND_PROCESSING,
    REJECTED,
    TERMINAL_STATUSES,
    CreationFlow,
    compute_financials,
    effective_status,
)
from .errors import InvalidTransition, NotFound, SlotConflict
from .models import Booking
from .refunds import RefundQuote, compute_cancellation_refund, compute_rejection_refund
from .reminders import ReminderScheduler
from .repository import compare_and_set_refund, compare_and_set_status, get_booking
from .sequence import SequenceGenerator

logger = logging.getLogger(__name__)


def _refund_state(quote: RefundQuote) -> str:
    return REFUND_PROCESSING if quote.amount > 0 else REFUND_NOT_APPLICABLE


class BookingEngine:
    """
    Owns booking status and its transitions.

        (create) -> pending | confirmed
        pending -> confirmed | rejected
        confirmed -> cancelled

    Every transition is a compare-and-swap on the persisted status, so two
    racing actors (admin confirming, customer cancelling) cannot both win.
    `completed` is never written; it is how an ended confirmed booking reads.
    """

    def __init__(
        self,
        engine: Engine,
        catalog,
        gateway,
        notifier,
        *,
        sequence: SequenceGenerator | None = None,
        reminders: ReminderScheduler | None = None,
        clock: Callable[[], datetime] = now_ist,
    ):
        self.engine = engine
        self.catalog = catalog
        self.gateway = gateway
        self.notifier = notifier
        self.sequence = sequence or SequenceGenerator(engine)
        self.reminders = reminders or ReminderScheduler(engine, notifier, clock=clock)
        self.clock = clock

    #
    # Reads
    #

    def view_status(self, booking: Booking, now: datetime | None = None) -> str:
        return effective_status(
            booking.status, booking.start_date, booking.start_time, booking.duration_hours, now or self.clock()
        )

    def get(self, booking_pk: int, user_id: str | None = None) -> Booking:
        with session(self.engine) as s:
            booking = get_booking(s, booking_pk)
        if user_id is not None and booking.user_id != user_id:
            raise NotFound("Booking not found or unauthorized")
        return booking

    #
    # Creation
    #

    def check_availability(
        self,
        vehicle_id: str,
        start_date: date,
        start_time: str,
        duration_hours: int,
        *,
        vehicle_type: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Run the creation checks without persisting; returns the normalised start time."""
        if duration_hours <= 0:
            raise ValueError("duration_hours must be positive")
        start_time = normalize_hhmm(start_time)
        with session(self.engine) as s:
            check_slot(s, vehicle_id, start_date, start_time, duration_hours, now or self.clock(), vehicle_type=vehicle_type)
        return start_time

    async def create_booking(
        self,
        *,
        user_id: str,
        vehicle_type: str,
        vehicle_id: str,
        start_date: date,
        start_time: str,
        duration_hours: int,
        flow: CreationFlow = "direct",
        payment_ref: str | None = None,
        now: datetime | None = None,
    ) -> Booking:
        """
        Create a booking: `direct` (paid self-service) lands confirmed,
        `manual` (admin-mediated) lands pending.

        Nothing is persisted unless every step succeeds. An identifier drawn
        for a creation that later fails is simply never used.
        """
        now = now or self.clock()
        if flow not in ("direct", "manual"):
            raise ValueError(f"Unknown booking flow: {flow}")

        start_time = self.check_availability(
            vehicle_id, start_date, start_time, duration_hours, vehicle_type=vehicle_type, now=now
        )

        price = await self.catalog.get_price(vehicle_type, vehicle_id)
        financials = compute_financials(price, duration_hours)
        public_id = await self.sequence.next_booking_id(now)

        stamp = to_utc(now)
        booking = Booking(
            booking_id=public_id,
            user_id=user_id,
            vehicle_type=vehicle_type,
            vehicle_id=vehicle_id,
            start_date=start_date,
            start_time=start_time,
            duration_hours=duration_hours,
            status=CONFIRMED if flow == "direct" else PENDING,
            total_amount=financials.total_amount,
            advance_payment=financials.advance_payment,
            remaining_amount=financials.remaining_amount,
            payment_ref=payment_ref,
            confirmation_timestamp=stamp if flow == "direct" else None,
            refund_status=REFUND_NOT_APPLICABLE,
            reminder_sent=False,
            created_at=stamp,
            updated_at=stamp,
        )

        with session(self.engine) as s:
            # Narrow the check-then-insert race: look again inside the writing session.
            again = has_conflict(s, vehicle_id, start_date, start_time, duration_hours, vehicle_type=vehicle_type)
            if again.conflict:
                raise SlotConflict(again.message or "Requested slot is not available", conflicting=again.existing)
            s.add(booking)
            s.commit()
            s.refresh(booking)

        logger.info("Booking %s created (%s, status=%s)", booking.booking_id, flow, booking.status)

        if booking.status == CONFIRMED:
            await self._after_confirmation(booking, now)
        else:
            try:
                await self.notifier.send_lifecycle(booking, "created")
            except Exception:
                logger.exception("Creation notice failed for booking %s", booking.booking_id)
        return booking

    #
    # Transitions
    #

    def _transition(
        self,
        booking_pk: int,
        expected: str,
        action: str,
        build: Callable[[Booking], dict[str, Any]],
        now: datetime,
        user_id: str | None = None,
    ) -> Booking:
        with session(self.engine) as s:
            booking = get_booking(s, booking_pk)
            if user_id is not None and booking.user_id != user_id:
                raise NotFound("Booking not found or unauthorized")

            current = self.view_status(booking, now)
            if current != expected:
                raise InvalidTransition(f"Cannot {action} a booking that is {current}", current=current)

            if not compare_and_set_status(s, booking.id, expected, build(booking)):
                s.rollback()
                s.refresh(booking)
                raise InvalidTransition(
                    f"Cannot {action}: booking is now {booking.status}", current=booking.status
                )
            s.commit()
            s.refresh(booking)

        logger.info("Booking %s: %s -> %s", booking.booking_id, expected, booking.status)
        return booking

    async def confirm(self, booking_pk: int, now: datetime | None = None) -> Booking:
        now = now or self.clock()
        stamp = to_utc(now)
        booking = self._transition(
            booking_pk,
            PENDING,
            "confirm",
            lambda b: {"status": CONFIRMED, "confirmation_timestamp": stamp, "updated_at": stamp},
            now,
        )
        await self._after_confirmation(booking, now)
        return booking

    async def reject(self, booking_pk: int, reason: str, now: datetime | None = None) -> Booking:
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("A rejection reason is required")
        now = now or self.clock()
        stamp = to_utc(now)

        def build(b: Booking) -> dict[str, Any]:
            quote = compute_rejection_refund(b.advance_payment)
            return {
                "status": REJECTED,
                "rejection_reason": reason,
                "refund_amount": quote.amount,
                "refund_deduction": quote.deduction,
                "refund_status": _refund_state(quote),
                "updated_at": stamp,
            }

        booking = self._transition(booking_pk, PENDING, "reject", build, now)
        return await self._after_termination(booking, f"Booking rejected: {reason}", now)

    async def cancel(
        self,
        booking_pk: int,
        *,
        user_id: str | None = None,
        refund_details: dict | None = None,
        now: datetime | None = None,
    ) -> Booking:
        """Cancel a confirmed booking; pass `user_id` to enforce ownership."""
        now = now or self.clock()
        stamp = to_utc(now)

        def build(b: Booking) -> dict[str, Any]:
            quote = compute_cancellation_refund(b.advance_payment, b.confirmation_timestamp, now)
            values = {
                "status": CANCELLED,
                "cancelled_timestamp": stamp,
                "refund_amount": quote.amount,
                "refund_deduction": quote.deduction,
                "refund_status": _refund_state(quote),
                "updated_at": stamp,
            }
            if refund_details:
                values["refund_details"] = refund_details
            return values

        booking = self._transition(booking_pk, CONFIRMED, "cancel", build, now, user_id=user_id)
        by = "user" if user_id is not None else "admin"
        return await self._after_termination(booking, f"Booking cancelled by {by}", now)

    async def complete_refund(self, booking_pk: int, completed_by: str, now: datetime | None = None) -> Booking:
        """Downstream confirmation that the money actually moved."""
        now = now or self.clock()
        stamp = to_utc(now)
        with session(self.engine) as s:
            booking = get_booking(s, booking_pk)
            if booking.status not in TERMINAL_STATUSES or booking.refund_status != REFUND_PROCESSING:
                raise InvalidTransition(
                    f"Refund cannot be completed from {booking.refund_status}", current=booking.refund_status
                )
            ok = compare_and_set_refund(
                s,
                booking.id,
                REFUND_PROCESSING,
                {
                    "refund_status": REFUND_COMPLETED,
                    "refund_timestamp": stamp,
                    "refund_completed_by": completed_by,
                    "updated_at": stamp,
                },
            )
            if not ok:
                s.rollback()
                s.refresh(booking)
                raise InvalidTransition(
                    f"Refund cannot be completed from {booking.refund_status}", current=booking.refund_status
                )
            s.commit()
            s.refresh(booking)

        logger.info("Refund for booking %s marked completed by %s", booking.booking_id, completed_by)
        try:
            await self.notifier.send_refund_complete(booking)
        except Exception:
            logger.exception("Refund-complete notice failed for booking %s", booking.booking_id)
        return booking

    def submit_refund_details(self, booking_pk: int, user_id: str, details: dict) -> Booking:
        if not details:
            raise ValueError("Missing refund details")
        with session(self.engine) as s:
            booking = get_booking(s, booking_pk)
            if booking.user_id != user_id:
                raise NotFound("Booking not found or unauthorized")
            if booking.status != REJECTED:
                raise InvalidTransition(
                    "Refund details can only be submitted for rejected bookings", current=booking.status
                )
            booking.refund_details = details
            booking.updated_at = datetime.now(tz=timezone.utc)
            s.add(booking)
            s.commit()
            s.refresh(booking)
        return booking

    #
    # Side effects
    #

    async def _after_confirmation(self, booking: Booking, now: datetime) -> None:
        # Confirmation already committed; downstream trouble is logged, not raised.
        try:
            await self.notifier.send_confirmation(booking)
        except Exception:
            logger.exception("Confirmation notice failed for booking %s", booking.booking_id)
        try:
            outcome = await self.reminders.immediate_check(booking.id, now)
            logger.info("Immediate reminder check for booking %s: %s", booking.booking_id, outcome)
        except Exception:
            logger.exception("Immediate reminder check failed for booking %s", booking.booking_id)

    async def _after_termination(self, booking: Booking, reason: str, now: datetime) -> Booking:
        booking = await self._request_refund(booking, reason, now)

        try:
            await self.catalog.set_availability(booking.vehicle_type, booking.vehicle_id, True)
        except Exception as e:
            logger.warning("Could not mark vehicle %s/%s available: %s", booking.vehicle_type, booking.vehicle_id, e)

        try:
            await self.notifier.send_lifecycle(booking, booking.status)
        except Exception:
            logger.exception("Lifecycle notice failed for booking %s", booking.booking_id)
        return booking

    async def _request_refund(self, booking: Booking, reason: str, now: datetime) -> Booking:
        """
        Ask the gateway to refund. The refund stays `processing` either way;
        only `complete_refund` moves it on.
        """
        if booking.refund_status != REFUND_PROCESSING or not booking.payment_ref:
            return booking

        notes = {"booking_id": booking.booking_id, "reason": reason, "requested_at": to_ist(now).isoformat()}
        try:
            refund_id = await self.gateway.request_refund(booking.payment_ref, booking.refund_amount, notes)
        except Exception as e:
            logger.warning(
                "Refund request for booking %s failed; left processing for manual follow-up: %s",
                booking.booking_id,
                e,
            )
            return booking

        with session(self.engine) as s:
            row = get_booking(s, booking.id)
            row.refund_id = refund_id
            row.refund_details = {**(row.refund_details or {}), "method": "auto_gateway", "refund_id": refund_id}
            s.add(row)
            s.commit()
            s.refresh(row)
        logger.info("Refund %s requested for booking %s (%s)", refund_id, row.booking_id, row.refund_amount)
        return row
