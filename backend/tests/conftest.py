"""Shared fixtures: in-memory SQLite, a settable clock, a recording notifier."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import DateTime, Integer, String, create_engine
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from recordlock.locks import models as lock_models  # noqa: F401
from recordlock.locks.manager import LockManager
from recordlock.locks.notifier import RecordingNotifier
from recordlock.locks.store import SqlLockStore
from recordlock.shared.db import Base, make_sessionmaker
from recordlock.tenants import models as tenant_models  # noqa: F401

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Invoice(Base):
    __tablename__ = "test_invoices"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    number: Mapped[str] = mapped_column(String(32))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kw) -> datetime:
        self.current += timedelta(**kw)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


def memory_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine():
    eng = memory_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(db, clock):
    return SqlLockStore(db, clock)


@pytest.fixture
def manager(store, notifier, clock):
    return LockManager(store, notifier, clock, timeout_minutes=5)
