from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.engine import Engine

from .clock import hours_between, now_ist, to_utc, window_start
from .db import session
from .domain import CONFIRMED
from .models import Booking
from .repository import awaiting_reminder, get_booking, latch_reminder

USE_INTERNAL_CRON = os.getenv("USE_INTERNAL_CRON", "").strip().lower() in {"1", "true", "yes", "on"}
REMINDER_CHECK_INTERVAL_SECONDS = float(os.getenv("REMINDER_CHECK_INTERVAL_SECONDS", "300"))

SEND_WITHIN_HOURS = 1.0
SWEEP_TOO_EARLY_HOURS = 1.5
IMMEDIATE_TOO_EARLY_HOURS = 1.3

SENT = "sent"
ALREADY_SENT = "already_sent"
NOT_NEEDED = "not_needed"
FAILED = "failed"

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    success: bool = True
    checked: int = 0
    reminders_sent: int = 0
    errors: list[dict] = field(default_factory=list)


def hours_until_pickup(booking: Booking, now: datetime) -> float:
    return hours_between(now, window_start(booking.start_date, booking.start_time))


class ReminderScheduler:
    """
    One-time pickup reminders for confirmed bookings.

    Both entry points read the `reminder_sent` latch, send, then flip the
    latch. A failed send leaves the latch down so the next sweep retries.
    """

    def __init__(self, engine: Engine, notifier, clock: Callable[[], datetime] = now_ist):
        self.engine = engine
        self.notifier = notifier
        self.clock = clock

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or self.clock()
        with session(self.engine) as s:
            candidates = awaiting_reminder(s)

        result = SweepResult(checked=len(candidates))
        logger.info("Reminder sweep: %s confirmed bookings without a reminder", len(candidates))

        for candidate in candidates:
            booking = candidate
            try:
                # The snapshot may be stale: an immediate check or a cancel can land mid-sweep.
                booking = self._reload(candidate.id)
                if booking is None or booking.status != CONFIRMED or booking.reminder_sent:
                    continue
                hours = hours_until_pickup(booking, now)
                if hours < 0 or hours > SWEEP_TOO_EARLY_HOURS:
                    continue
                if not (0 <= hours <= SEND_WITHIN_HOURS):
                    continue
                if await self._send_and_latch(booking, hours, now):
                    result.reminders_sent += 1
                else:
                    result.errors.append({"booking_id": booking.booking_id, "error": "reminder not delivered"})
            except Exception as e:
                logger.exception("Reminder processing failed for booking %s", booking.booking_id)
                result.errors.append({"booking_id": booking.booking_id, "error": str(e)})

        logger.info("Reminder sweep complete: %s sent, %s errors", result.reminders_sent, len(result.errors))
        return result

    async def immediate_check(self, booking_pk: int, now: datetime | None = None) -> str:
        """Run right after confirmation so near-term pickups don't wait for a sweep."""
        now = now or self.clock()
        with session(self.engine) as s:
            booking = get_booking(s, booking_pk)

        if booking.reminder_sent:
            return ALREADY_SENT
        if booking.status != CONFIRMED:
            return NOT_NEEDED

        hours = hours_until_pickup(booking, now)
        if hours > IMMEDIATE_TOO_EARLY_HOURS or hours < 0:
            logger.info("Booking %s is %.2f hours away; no immediate reminder", booking.booking_id, hours)
            return NOT_NEEDED

        return SENT if await self._send_and_latch(booking, hours, now) else FAILED

    def _reload(self, booking_pk: int) -> Booking | None:
        with session(self.engine) as s:
            return s.get(Booking, booking_pk)

    async def _send_and_latch(self, booking: Booking, hours: float, now: datetime) -> bool:
        try:
            delivered = await self.notifier.send_reminder(booking, hours)
        except Exception:
            logger.exception("Reminder send raised for booking %s", booking.booking_id)
            return False
        if not delivered:
            logger.warning("Reminder for booking %s not delivered; will retry", booking.booking_id)
            return False

        with session(self.engine) as s:
            latched = latch_reminder(s, booking.id, to_utc(now))
            s.commit()
        if latched:
            logger.info("Reminder sent for booking %s (%.2f hours to pickup)", booking.booking_id, hours)
        else:
            logger.info("Reminder for booking %s was already latched by another run", booking.booking_id)
        return True


async def reminder_loop(
    scheduler: ReminderScheduler,
    stop_event: asyncio.Event,
    interval: float = REMINDER_CHECK_INTERVAL_SECONDS,
) -> None:
    """In-process alternative to the external cron trigger; first run is immediate."""
    while not stop_event.is_set():
        try:
            await scheduler.sweep()
        except Exception:
            logger.exception("Scheduled reminder sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
