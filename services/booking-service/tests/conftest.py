import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import jwt
import pytest
from sqlalchemy import create_engine

# Ensure `services/booking-service` is on sys.path so `import app` works when
# running tests from the monorepo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.clock import IST  # noqa: E402
from app.db import init_db, session  # noqa: E402
from app.errors import RefundRequestFailed  # noqa: E402
from app.lifecycle import BookingEngine  # noqa: E402
from app.models import Booking  # noqa: E402
from app.security import JWT_ALG, JWT_SECRET  # noqa: E402
from app.sequence import SequenceGenerator  # noqa: E402

# 08:00 IST on a fixed day, far from any real clock.
NOW = datetime(2030, 1, 10, 8, 0, tzinfo=IST)
DAY = date(2030, 1, 10)


def make_token(sub: str, role: str, ttl_minutes: int = 60) -> str:
    issued = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


class FakeCatalog:
    def __init__(self, price: float = 100):
        self.price = price
        self.availability: list[tuple[str, str, bool]] = []
        self.fail_availability = False

    async def get_price(self, vehicle_type, vehicle_id):
        return self.price

    async def set_availability(self, vehicle_type, vehicle_id, available):
        if self.fail_availability:
            raise RuntimeError("catalog down")
        self.availability.append((vehicle_type, vehicle_id, available))


class FakeGateway:
    def __init__(self):
        self.calls: list[tuple[str, int]] = []
        self.fail = False

    async def request_refund(self, payment_ref, amount, notes=None):
        self.calls.append((payment_ref, amount))
        if self.fail:
            raise RefundRequestFailed("gateway timeout")
        return f"rfnd_{len(self.calls)}"


class FakeNotifier:
    def __init__(self):
        self.confirmations: list[str] = []
        self.reminders: list[tuple[str, float]] = []
        self.refund_completes: list[str] = []
        self.lifecycle: list[tuple[str, str]] = []
        self.deliver = True

    async def send_confirmation(self, booking):
        self.confirmations.append(booking.booking_id)
        return True

    async def send_reminder(self, booking, hours_until_pickup):
        if not self.deliver:
            return False
        self.reminders.append((booking.booking_id, hours_until_pickup))
        return True

    async def send_refund_complete(self, booking):
        self.refund_completes.append(booking.booking_id)
        return True

    async def send_lifecycle(self, booking, kind):
        self.lifecycle.append((booking.booking_id, kind))
        return True


async def _no_sleep(_seconds):
    return None


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'bookings.db'}",
        connect_args={"check_same_thread": False},
    )
    return init_db(eng)


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def booking_engine(engine, catalog, gateway, notifier):
    return BookingEngine(
        engine,
        catalog,
        gateway,
        notifier,
        sequence=SequenceGenerator(engine, sleep=_no_sleep),
        clock=lambda: NOW,
    )


_counter = {"n": 0}


def add_booking(engine, **overrides) -> Booking:
    """Insert a booking row directly, bypassing the lifecycle checks."""
    _counter["n"] += 1
    stamp = NOW.astimezone(timezone.utc)
    values = dict(
        booking_id=f"RH300110-{900 + _counter['n']:03d}",
        user_id="user-1",
        vehicle_type="bike",
        vehicle_id="v-1",
        start_date=DAY,
        start_time="10:00",
        duration_hours=2,
        status="confirmed",
        total_amount=1000,
        advance_payment=300,
        remaining_amount=700,
        confirmation_timestamp=stamp,
        refund_status="not_applicable",
        reminder_sent=False,
        created_at=stamp,
        updated_at=stamp,
    )
    values.update(overrides)
    with session(engine) as s:
        row = Booking(**values)
        s.add(row)
        s.commit()
        s.refresh(row)
    return row
