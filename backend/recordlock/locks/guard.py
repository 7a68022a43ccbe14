"""Write guards.

``VersionGuard`` rejects writes based on a stale revision marker (the
record's ``updated_at``). ``require_lock`` and ``require_revision`` wrap the
pessimistic and optimistic checks as FastAPI dependencies for edit routes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import Depends, HTTPException, Request
from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session

from ..auth.utils import Actor, current_actor
from ..deps import current_domain, get_lock_db, get_lock_manager
from ..shared.clock import as_utc
from .exceptions import LOCKED_MESSAGE, VERSION_CONFLICT_MESSAGE, VersionConflict
from .manager import LockManager
from .resources import ConflictNotifiable, hook_for

logger = logging.getLogger(__name__)

_EXPECTED_ATTR = "_recordlock_expected_revision"


def normalize_revision(value: Any) -> Any:
    """Revision markers compare as UTC instants; ISO strings are parsed."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return value
    return value


class VersionGuard:
    def __init__(self, message: str = VERSION_CONFLICT_MESSAGE):
        self.message = message

    def check(self, expected: Any, current: Any, *, hook: ConflictNotifiable | None = None) -> None:
        current = normalize_revision(current)
        if current is None:
            return
        expected = normalize_revision(expected)
        if expected is not None and expected == current:
            return
        logger.info("version conflict: expected %s, stored %s", expected, current)
        if hook is not None:
            hook.on_version_conflict(self.message)
        raise VersionConflict(
            expected if isinstance(expected, datetime) else None,
            current if isinstance(current, datetime) else None,
            self.message,
        )


def _pk_column(model: Any):
    return inspect(model).primary_key[0]


def _coerce_pk(model: Any, pk: Any) -> Any:
    try:
        return _pk_column(model).type.python_type(pk)
    except (NotImplementedError, TypeError, ValueError):
        return pk


def coerce_revision(model: Any, value: Any, column: str = "updated_at") -> Any:
    """Convert a revision marker that arrived as text to the column's Python type."""
    if not isinstance(value, str):
        return value
    try:
        python_type = getattr(model, column).type.python_type
    except NotImplementedError:
        return value
    if python_type in (str, datetime, bool):
        # datetimes are parsed by normalize_revision
        return value
    try:
        return python_type(value.strip())
    except (TypeError, ValueError):
        return value


def read_revision(db: Session, model: Any, pk: Any, column: str = "updated_at") -> Any:
    """Stored revision marker, read straight from the database."""
    stmt = select(getattr(model, column)).where(_pk_column(model) == _coerce_pk(model, pk))
    return db.execute(stmt).scalar_one_or_none()


def guard_write(
    db: Session,
    model: Any,
    pk: Any,
    expected: Any,
    *,
    column: str = "updated_at",
    hook: ConflictNotifiable | None = None,
    guard: VersionGuard | None = None,
) -> None:
    current = read_revision(db, model, pk, column)
    (guard or VersionGuard()).check(coerce_revision(model, expected, column), current, hook=hook)


def expect_revision(instance: Any, value: Any) -> None:
    """Revision the client loaded; checked on the next flush of ``instance``."""
    setattr(instance, _EXPECTED_ATTR, value)


def install_revision_guard(model: Any, column: str = "updated_at", guard: VersionGuard | None = None) -> None:
    """Check every UPDATE of ``model`` against its stored revision marker.

    Updates without an ``expect_revision`` call fail once the row has a
    marker.
    """
    guard = guard or VersionGuard()
    col = getattr(model, column)

    def _before_update(mapper, connection, target):
        pk = mapper.primary_key_from_instance(target)[0]
        current = connection.execute(select(col).where(_pk_column(model) == pk)).scalar_one_or_none()
        expected = coerce_revision(model, getattr(target, _EXPECTED_ATTR, None), column)
        try:
            guard.check(expected, current, hook=hook_for(target))
        finally:
            setattr(target, _EXPECTED_ATTR, None)

    event.listen(model, "before_update", _before_update)


def require_lock(resource_type: str, param: str = "id"):
    """Take or renew the caller's lock on the route's record before the handler runs."""

    def _dep(
        request: Request,
        actor: Actor = Depends(current_actor),
        domain: str = Depends(current_domain),
        manager: LockManager = Depends(get_lock_manager),
    ):
        rid = request.path_params.get(param)
        if rid is None:
            return True
        ok = manager.acquire(
            resource_type,
            rid,
            actor.id,
            domain,
            owner_name=actor.display_name,
            origin=request.headers.get("x-socket-id"),
        )
        if not ok:
            raise HTTPException(status_code=423, detail=LOCKED_MESSAGE)
        return True

    return _dep


def require_revision(model: Any, param: str = "id", field: str | None = None, column: str = "updated_at"):
    """Reject the write with 409 when ``<param>_version`` no longer matches the record."""
    version_field = field or f"{param}_version"

    async def _dep(request: Request, db: Session = Depends(get_lock_db)):
        pk = request.path_params.get(param)
        if pk is None:
            return None
        provided = request.query_params.get(version_field)
        if provided is None and request.headers.get("content-type", "").startswith("application/json"):
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                provided = body.get(version_field)
        try:
            guard_write(db, model, pk, provided, column=column)
        except VersionConflict as e:
            raise HTTPException(status_code=409, detail=e.message)
        return provided

    return _dep
