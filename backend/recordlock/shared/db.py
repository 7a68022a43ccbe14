from __future__ import annotations
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy import Engine, create_engine
from .config import settings


class Base(DeclarativeBase):
    pass


def make_engine(url: str) -> Engine:
    # sqlite: fail after 5s instead of waiting on a busy writer forever
    connect_args = {"check_same_thread": False, "timeout": 5} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, future=True, connect_args=connect_args)


def make_sessionmaker(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=bind, autoflush=False, autocommit=False, expire_on_commit=False, future=True
    )


DB_URL = settings.DATABASE_URL
engine = make_engine(DB_URL)
SessionLocal = make_sessionmaker(engine)


@lru_cache(maxsize=64)
def sessionmaker_for(url: str) -> sessionmaker[Session]:
    """One engine per database URL (central or tenant), created on first use."""
    if url == DB_URL:
        return SessionLocal
    return make_sessionmaker(make_engine(url))


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    db = (factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
