from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from .clock import as_aware, window_end

CreationFlow = Literal["direct", "manual"]

PENDING = "pending"
CONFIRMED = "confirmed"
REJECTED = "rejected"
CANCELLED = "cancelled"
COMPLETED = "completed"  # read-time projection only, never stored

ACTIVE_STATUSES = (PENDING, CONFIRMED)
TERMINAL_STATUSES = (REJECTED, CANCELLED)

REFUND_NOT_APPLICABLE = "not_applicable"
REFUND_PROCESSING = "processing"
REFUND_COMPLETED = "completed"

ADVANCE_RATE = Decimal("0.3")


@dataclass(frozen=True)
class Financials:
    total_amount: int
    advance_payment: int
    remaining_amount: int


def compute_financials(price_per_hour: float | int, duration_hours: int) -> Financials:
    if duration_hours <= 0:
        raise ValueError("duration_hours must be positive")
    if price_per_hour < 0:
        raise ValueError("Vehicle price must be >= 0")
    total = int((Decimal(str(price_per_hour)) * duration_hours).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    advance = math.ceil(Decimal(total) * ADVANCE_RATE)
    return Financials(total_amount=total, advance_payment=advance, remaining_amount=total - advance)


def effective_status(status: str, start_date: date, start_time: str, duration_hours: int, now: datetime) -> str:
    """A confirmed booking whose window has ended reads as `completed`."""
    if status == CONFIRMED and window_end(start_date, start_time, duration_hours) < as_aware(now):
        return COMPLETED
    return status
