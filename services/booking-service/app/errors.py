from __future__ import annotations

from typing import Any


class BookingError(Exception):
    """Base for failures surfaced to callers as rejected operations."""

    code = "booking_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class NotFound(BookingError):
    code = "not_found"
    status_code = 404


class PastBooking(BookingError):
    code = "past_booking"
    status_code = 400

    def __init__(self, message: str = "Cannot book for a past date or time."):
        super().__init__(message)


class SlotConflict(BookingError):
    code = "slot_conflict"
    status_code = 409

    def __init__(self, message: str, conflicting: Any = None):
        super().__init__(message)
        self.conflicting = conflicting

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["conflict"] = True
        if self.conflicting is not None:
            out["existing_booking"] = {
                "booking_id": self.conflicting.booking_id,
                "start_date": self.conflicting.start_date.isoformat(),
                "start_time": self.conflicting.start_time,
                "duration_hours": self.conflicting.duration_hours,
            }
        return out


class InvalidTransition(BookingError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, message: str, current: str | None = None):
        super().__init__(message)
        self.current = current

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        if self.current is not None:
            out["current_status"] = self.current
        return out


class SequenceExhausted(BookingError):
    code = "sequence_exhausted"
    status_code = 500


class RefundRequestFailed(BookingError):
    """Payment gateway refused or never answered a refund request.

    Never escapes a state transition; the refund stays `processing`.
    """

    code = "refund_request_failed"
    status_code = 502


class UpstreamUnavailable(BookingError):
    code = "upstream_unavailable"
    status_code = 502
