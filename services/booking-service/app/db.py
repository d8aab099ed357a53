from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .models import Base, BookingSequence

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./booking-service.db")

SEQUENCE_ROW_ID = 1


def session(engine: Engine) -> Session:
    # Route handlers read booking fields after committing inside a short-lived
    # session context; keep attributes loaded to avoid DetachedInstanceError.
    return Session(engine, expire_on_commit=False)


def init_db(engine: Engine) -> Engine:
    """
    Create tables and the single sequence counter row.

    Safe to call repeatedly: the counter row is only inserted when missing and
    an existing value is never touched.
    """
    Base.metadata.create_all(engine)
    with session(engine) as s:
        if s.get(BookingSequence, SEQUENCE_ROW_ID) is None:
            s.add(BookingSequence(id=SEQUENCE_ROW_ID, current_value=0))
            s.commit()
    return engine


@lru_cache(maxsize=1)
def default_engine() -> Engine:
    kwargs: dict = {"pool_pre_ping": True}
    if DATABASE_URL.startswith("sqlite"):
        # Sync endpoints run in a threadpool.
        kwargs["connect_args"] = {"check_same_thread": False}
    return init_db(create_engine(DATABASE_URL, **kwargs))
