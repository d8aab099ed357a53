import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from conftest import NOW
from sqlalchemy import delete

from app.db import session
from app.errors import SequenceExhausted
from app.models import BookingSequence
from app.sequence import SequenceGenerator, backoff_delay, date_prefix, format_booking_id


async def _no_sleep(_seconds):
    return None


def _suffix(booking_id: str) -> int:
    return int(booking_id.split("-", 1)[1])


def test_date_prefix_uses_india_calendar_day():
    # 19:00 UTC is already 00:30 the next day in IST.
    late_utc = datetime(2030, 1, 10, 19, 0, tzinfo=timezone.utc)
    assert date_prefix(late_utc) == "RH300111"
    assert date_prefix(NOW) == "RH300110"


def test_suffix_is_zero_padded_but_not_truncated():
    assert format_booking_id(NOW, 7) == "RH300110-007"
    assert format_booking_id(NOW, 1000) == "RH300110-1000"


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n) for n in range(1, 6)] == [0.1, 0.2, 0.4, 0.8, 1.0]


@pytest.mark.anyio
async def test_counter_is_global_across_dates(engine):
    gen = SequenceGenerator(engine, sleep=_no_sleep)

    first = await gen.next_booking_id(NOW)
    second = await gen.next_booking_id(NOW + timedelta(days=1))
    third = await gen.next_booking_id(NOW + timedelta(days=400))

    assert first == "RH300110-001"
    assert second == "RH300111-002"
    assert third == "RH310214-003"


@pytest.mark.anyio
async def test_optimistic_fallback_increments(engine):
    gen = SequenceGenerator(engine, use_returning=False, sleep=_no_sleep)

    ids = [await gen.next_booking_id(NOW) for _ in range(3)]

    assert [_suffix(i) for i in ids] == [1, 2, 3]
    with session(engine) as s:
        assert s.get(BookingSequence, 1).current_value == 3


@pytest.mark.anyio
async def test_exhausted_after_five_attempts(engine):
    with session(engine) as s:
        s.execute(delete(BookingSequence))
        s.commit()

    delays = []

    async def _record(seconds):
        delays.append(seconds)

    gen = SequenceGenerator(engine, sleep=_record)
    with pytest.raises(SequenceExhausted):
        await gen.next_booking_id(NOW)

    assert delays == [0.1, 0.2, 0.4, 0.8]


def test_concurrent_callers_get_distinct_increasing_suffixes(engine):
    gen = SequenceGenerator(engine)
    days = [NOW + timedelta(days=i % 3) for i in range(20)]

    def _draw(now):
        return asyncio.run(gen.next_booking_id(now))

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(_draw, days))

    suffixes = sorted(_suffix(i) for i in ids)
    assert suffixes == list(range(1, 21))
    assert len(set(ids)) == 20
