from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from . import events
from .clock import to_ist
from .errors import NotFound, RefundRequestFailed, UpstreamUnavailable
from .models import Booking

VEHICLE_SERVICE_URL = os.getenv("VEHICLE_SERVICE_URL", "http://localhost:8002")
PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL", "https://api.razorpay.com/v1")
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

logger = logging.getLogger(__name__)

_VEHICLE_TABLES = {"bike": "bikes", "car": "cars", "scooty": "scooty"}


def vehicle_table(vehicle_type: str) -> str:
    t = (vehicle_type or "").strip().lower()
    return _VEHICLE_TABLES.get(t, t)


class VehicleCatalog:
    """HTTP client for the vehicle catalog service."""

    def __init__(self, base_url: str = VEHICLE_SERVICE_URL, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_price(self, vehicle_type: str, vehicle_id: str) -> float:
        url = f"{self.base_url}/vehicles/{vehicle_table(vehicle_type)}/{vehicle_id}"
        # Ignore HTTP(S)_PROXY env vars for internal service calls.
        try:
            async with httpx.AsyncClient(timeout=self.timeout, trust_env=False) as client:
                r = await client.get(url)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Vehicle catalog unreachable: {e}") from e
        if r.status_code == 404:
            raise NotFound("Vehicle not found")
        if r.status_code >= 400:
            raise UpstreamUnavailable(f"Vehicle catalog error ({r.status_code}): {r.text}")

        data = r.json() or {}
        price = data.get("price_per_hour", data.get("price"))
        if price is None:
            raise UpstreamUnavailable("Vehicle catalog returned no price")
        return float(price)

    async def set_availability(self, vehicle_type: str, vehicle_id: str, available: bool) -> None:
        url = f"{self.base_url}/vehicles/{vehicle_table(vehicle_type)}/{vehicle_id}"
        async with httpx.AsyncClient(timeout=self.timeout, trust_env=False) as client:
            r = await client.patch(url, json={"is_available": available})
        r.raise_for_status()


class PaymentGateway:
    """Razorpay-style refund API; amounts travel in the minor unit (paise)."""

    def __init__(
        self,
        base_url: str = PAYMENT_GATEWAY_URL,
        key_id: str = RAZORPAY_KEY_ID,
        key_secret: str = RAZORPAY_KEY_SECRET,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = (key_id, key_secret)
        self.timeout = timeout

    async def request_refund(self, payment_ref: str, amount: int, notes: dict[str, Any] | None = None) -> str:
        url = f"{self.base_url}/payments/{payment_ref}/refund"
        body = {"amount": int(amount) * 100, "notes": notes or {}}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, auth=self.auth) as client:
                r = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise RefundRequestFailed(f"Refund request failed: {e}") from e
        if r.status_code >= 400:
            raise RefundRequestFailed(f"Refund request rejected ({r.status_code}): {r.text}")

        refund_id = (r.json() or {}).get("id")
        if not refund_id:
            raise RefundRequestFailed("Gateway accepted the refund without a reference")
        return str(refund_id)


def booking_event(booking: Booking) -> dict[str, Any]:
    return {
        "id": booking.id,
        "booking_id": booking.booking_id,
        "user_id": booking.user_id,
        "vehicle_type": booking.vehicle_type,
        "vehicle_id": booking.vehicle_id,
        "start_date": booking.start_date.isoformat(),
        "start_time": booking.start_time,
        "duration_hours": booking.duration_hours,
        "status": booking.status,
        "total_amount": booking.total_amount,
        "advance_payment": booking.advance_payment,
        "remaining_amount": booking.remaining_amount,
    }


class Notifier:
    """
    Hands customer communications to the notification service as events.

    Delivery itself (email, SMS, calls) happens downstream; each method
    reports only whether the event was accepted.
    """

    async def send_confirmation(self, booking: Booking) -> bool:
        return await events.publish("booking.confirmed", booking_event(booking))

    async def send_reminder(self, booking: Booking, hours_until_pickup: float) -> bool:
        payload = booking_event(booking)
        payload["hours_until_pickup"] = round(hours_until_pickup, 2)
        payload["starts_very_soon"] = hours_until_pickup < 0.5
        return await events.publish("booking.reminder", payload)

    async def send_refund_complete(self, booking: Booking) -> bool:
        payload = booking_event(booking)
        payload.update(
            {
                "refund_amount": booking.refund_amount,
                "refund_id": booking.refund_id,
                "refund_details": booking.refund_details,
                "refund_timestamp": to_ist(booking.refund_timestamp).isoformat() if booking.refund_timestamp else None,
            }
        )
        return await events.publish("booking.refund_completed", payload)

    async def send_lifecycle(self, booking: Booking, kind: str) -> bool:
        payload = booking_event(booking)
        payload["refund_amount"] = booking.refund_amount
        payload["refund_status"] = booking.refund_status
        return await events.publish(f"booking.{kind}", payload)
