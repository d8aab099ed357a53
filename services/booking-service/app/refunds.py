from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from .clock import hours_between

# Legacy rows carry no advance; their refunds are computed on this base.
FALLBACK_ADVANCE = 100

FULL_REFUND_WINDOW_HOURS = 2
LATE_REFUND_RATE = Decimal("0.7")
LATE_DEDUCTION_RATE = Decimal("0.3")


class RefundQuote(NamedTuple):
    amount: int
    deduction: int


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _base(advance_payment: int | float | None) -> Decimal:
    if not advance_payment:
        return Decimal(FALLBACK_ADVANCE)
    return Decimal(str(advance_payment))


def compute_cancellation_refund(
    advance_payment: int | float | None,
    confirmation_timestamp: datetime | None,
    now: datetime,
) -> RefundQuote:
    """
    Tiered refund of the advance payment for a customer cancellation.

    Up to two hours after confirmation the whole advance comes back; later
    cancellations keep 30% of it. A booking without a confirmation time is
    treated as confirmed right now.
    """
    base = _base(advance_payment)
    origin = confirmation_timestamp or now
    if hours_between(origin, now) <= FULL_REFUND_WINDOW_HOURS:
        return RefundQuote(amount=_round_half_up(base), deduction=0)
    return RefundQuote(
        amount=_round_half_up(base * LATE_REFUND_RATE),
        deduction=_round_half_up(base * LATE_DEDUCTION_RATE),
    )


def compute_rejection_refund(advance_payment: int | float | None) -> RefundQuote:
    # A rejection is never the customer's doing: always the full advance.
    return RefundQuote(amount=_round_half_up(_base(advance_payment)), deduction=0)
