"""Persistence for edit locks.

Every write is a single conditional statement followed by a commit, so two
requests racing on the same key cannot both win. Rows come back as detached
``LockRecord`` snapshots; the session identity map is never consulted.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Protocol

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..shared.clock import Clock, SystemClock, expiry_cutoff, to_db
from .exceptions import StoreUnavailable
from .models import EditLock, LockRecord

logger = logging.getLogger(__name__)

_locks = EditLock.__table__


class LockStore(Protocol):
    def find(self, resource_type: str, resource_id: str) -> LockRecord | None: ...

    def upsert(
        self, resource_type: str, resource_id: str, owner_id: str, acquired_at: datetime
    ) -> LockRecord | None:
        """Create the lock or renew it for the same owner.

        Returns None when a different owner holds the key.
        """

    def delete_if_expired(self, lock: LockRecord, timeout: timedelta) -> bool: ...

    def delete_if_owner(self, lock: LockRecord, owner_id: str) -> bool: ...

    def list_expired(self, timeout: timedelta, before: datetime | None = None) -> list[LockRecord]: ...


class SqlLockStore:
    def __init__(self, db: Session, clock: Clock | None = None, *, native_upsert: bool = True):
        self.db = db
        self.clock = clock or SystemClock()
        # INSERT .. ON CONFLICT where the dialect has it
        self.native_upsert = native_upsert

    @contextmanager
    def _guarded(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("lock store failed during %s", operation, exc_info=True)
            raise StoreUnavailable(operation, e) from e

    def _key(self, resource_type: str, resource_id: str):
        return and_(_locks.c.resource_type == resource_type, _locks.c.resource_id == resource_id)

    def find(self, resource_type: str, resource_id: str) -> LockRecord | None:
        with self._guarded("find"):
            row = (
                self.db.execute(select(_locks).where(self._key(resource_type, resource_id)))
                .mappings()
                .first()
            )
            self.db.commit()
        return LockRecord.from_row(row) if row else None

    def upsert(
        self, resource_type: str, resource_id: str, owner_id: str, acquired_at: datetime
    ) -> LockRecord | None:
        ts = to_db(acquired_at)
        values = dict(
            resource_type=resource_type,
            resource_id=resource_id,
            owner_id=owner_id,
            acquired_at=ts,
            created_at=ts,
            updated_at=ts,
        )
        with self._guarded("upsert"):
            dialect = self.db.get_bind().dialect.name
            if self.native_upsert and dialect in ("sqlite", "postgresql"):
                self._native_upsert(dialect, values)
            else:
                self._portable_upsert(values)
            self.db.commit()

        lock = self.find(resource_type, resource_id)
        if lock is None or lock.owner_id != owner_id:
            return None
        return lock

    def _native_upsert(self, dialect: str, values: dict) -> None:
        ins = (sqlite.insert if dialect == "sqlite" else postgresql.insert)(_locks).values(**values)
        stmt = ins.on_conflict_do_update(
            index_elements=[_locks.c.resource_type, _locks.c.resource_id],
            set_=dict(acquired_at=ins.excluded.acquired_at, updated_at=ins.excluded.updated_at),
            where=_locks.c.owner_id == ins.excluded.owner_id,
        )
        self.db.execute(stmt)

    def _portable_upsert(self, values: dict) -> None:
        renewed = self.db.execute(
            update(_locks)
            .where(
                self._key(values["resource_type"], values["resource_id"]),
                _locks.c.owner_id == values["owner_id"],
            )
            .values(acquired_at=values["acquired_at"], updated_at=values["updated_at"])
        )
        if renewed.rowcount:
            return
        try:
            self.db.execute(insert(_locks).values(**values))
        except IntegrityError:
            # someone else's row already sits on this key
            self.db.rollback()

    def delete_if_expired(self, lock: LockRecord, timeout: timedelta) -> bool:
        cutoff = to_db(expiry_cutoff(self.clock.now(), timeout))
        with self._guarded("delete_if_expired"):
            res = self.db.execute(
                delete(_locks).where(_locks.c.id == lock.id, _locks.c.acquired_at <= cutoff)
            )
            self.db.commit()
        return res.rowcount > 0

    def delete_if_owner(self, lock: LockRecord, owner_id: str) -> bool:
        with self._guarded("delete_if_owner"):
            res = self.db.execute(
                delete(_locks).where(_locks.c.id == lock.id, _locks.c.owner_id == owner_id)
            )
            self.db.commit()
        return res.rowcount > 0

    def list_expired(self, timeout: timedelta, before: datetime | None = None) -> list[LockRecord]:
        cutoff = to_db(expiry_cutoff(before or self.clock.now(), timeout))
        with self._guarded("list_expired"):
            rows = (
                self.db.execute(
                    select(_locks).where(_locks.c.acquired_at <= cutoff).order_by(_locks.c.id)
                )
                .mappings()
                .all()
            )
            self.db.commit()
        return [LockRecord.from_row(r) for r in rows]
