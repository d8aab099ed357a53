from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .clock import now_ist, to_ist
from .db import SEQUENCE_ROW_ID
from .errors import SequenceExhausted
from .models import BookingSequence

logger = logging.getLogger(__name__)

ID_PREFIX = "RH"

MAX_ATTEMPTS = 5
BACKOFF_BASE_SECONDS = 0.1
BACKOFF_CAP_SECONDS = 1.0


class SequenceContention(Exception):
    """Another writer moved the counter between our read and our write."""


def date_prefix(now: datetime) -> str:
    local = to_ist(now)
    return f"{ID_PREFIX}{local:%y%m%d}"


def format_booking_id(now: datetime, value: int) -> str:
    return f"{date_prefix(now)}-{value:03d}"


def backoff_delay(attempt: int) -> float:
    return min(BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)), BACKOFF_CAP_SECONDS)


class SequenceGenerator:
    """
    Issues `RHYYMMDD-NNN` booking identifiers.

    The numeric suffix comes from one global counter that is never reset, so
    identifiers stay ordered across days. The date part is the IST calendar
    day of `now`.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        use_returning: bool | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._engine = engine
        if use_returning is None:
            use_returning = bool(getattr(engine.dialect, "update_returning", False))
        self._use_returning = use_returning
        self._sleep = sleep

    async def next_booking_id(self, now: datetime | None = None) -> str:
        now = now or now_ist()
        last_error: Exception | None = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                value = self._increment() if self._use_returning else self._increment_optimistic()
            except (SQLAlchemyError, SequenceContention, LookupError) as e:
                last_error = e
                logger.warning("Booking ID generation attempt %s failed: %s", attempt, e)
                if attempt < MAX_ATTEMPTS:
                    await self._sleep(backoff_delay(attempt))
                continue

            booking_id = format_booking_id(now, value)
            logger.info("Generated booking ID %s (attempt %s)", booking_id, attempt)
            return booking_id

        raise SequenceExhausted(f"Unable to generate booking ID: {last_error}")

    def _increment(self) -> int:
        stmt = (
            update(BookingSequence)
            .where(BookingSequence.id == SEQUENCE_ROW_ID)
            .values(current_value=BookingSequence.current_value + 1, updated_at=datetime.now(tz=timezone.utc))
            .returning(BookingSequence.current_value)
        )
        with self._engine.begin() as conn:
            value = conn.execute(stmt).scalar_one_or_none()
        if value is None:
            raise LookupError("booking_id_sequence row is missing")
        return int(value)

    def _increment_optimistic(self) -> int:
        # Read and conditional write run in separate short transactions so a
        # reader never has to upgrade its lock.
        with self._engine.connect() as conn:
            current = conn.execute(
                select(BookingSequence.current_value).where(BookingSequence.id == SEQUENCE_ROW_ID)
            ).scalar_one_or_none()
        if current is None:
            raise LookupError("booking_id_sequence row is missing")

        new_value = int(current) + 1
        stmt = (
            update(BookingSequence)
            .where(BookingSequence.id == SEQUENCE_ROW_ID)
            .where(BookingSequence.current_value == current)
            .values(current_value=new_value, updated_at=datetime.now(tz=timezone.utc))
        )
        with self._engine.begin() as conn:
            result = conn.execute(stmt)
        if result.rowcount != 1:
            raise SequenceContention(f"counter moved past {current}")
        return new_value
