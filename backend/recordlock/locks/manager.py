"""Pessimistic record locks: acquire, renew, release, expire.

A lock expires once ``timeout`` minutes (or one hour, whichever is shorter)
have passed since it was acquired or last renewed. Expired locks are removed
as soon as anyone looks at them, before ownership is checked, so a stale lock
never blocks a caller.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from ..shared.clock import Clock, SystemClock, is_expired, remaining_seconds
from .events import LockEvent, channel_name, locked_event, unlocked_event
from .exceptions import LockConflict, lock_conflict_message
from .models import LockRecord
from .notifier import Notifier, NullNotifier, safe_publish
from .resources import ConflictNotifiable, hook_for, key_for
from .store import LockStore

logger = logging.getLogger(__name__)


class LockManager:
    def __init__(
        self,
        store: LockStore,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        *,
        timeout_minutes: int = 5,
        tenancy: bool = False,
        broadcast_self: bool = False,
    ):
        self.store = store
        self.notifier = notifier or NullNotifier()
        self.clock = clock or SystemClock()
        self.timeout = timedelta(minutes=timeout_minutes)
        self.tenancy = tenancy
        self.broadcast_self = broadcast_self

    # --- helpers ---

    def _expired(self, lock: LockRecord) -> bool:
        return is_expired(lock.acquired_at, self.clock.now(), self.timeout)

    def _publish(self, event: LockEvent) -> None:
        safe_publish(self.notifier, event.channel, event, not self.broadcast_self)

    def _reclaim(self, lock: LockRecord, domain: str) -> LockRecord | None:
        """Delete an expired lock; returns whatever lock is left on the key."""
        if self.store.delete_if_expired(lock, self.timeout):
            logger.debug(
                "reclaimed expired lock %s#%s held by %s", lock.resource_type, lock.resource_id, lock.owner_id
            )
            self._publish(
                unlocked_event(
                    lock.resource_type, lock.resource_id, self.clock.now(), channel_name(domain, self.tenancy)
                ),
            )
            return None
        # renewed between our read and the delete
        return self.store.find(lock.resource_type, lock.resource_id)

    def _live(self, resource_type: str, resource_id: str, domain: str) -> LockRecord | None:
        lock = self.store.find(resource_type, resource_id)
        if lock is not None and self._expired(lock):
            lock = self._reclaim(lock, domain)
        return lock

    def _conflict(self, lock: LockRecord | None, resource_id: str, hook: ConflictNotifiable | None) -> None:
        message = lock_conflict_message(resource_id)
        logger.info(
            "lock conflict on %s#%s (held by %s)",
            lock.resource_type if lock else "?",
            resource_id,
            lock.owner_id if lock else "?",
        )
        if hook is not None:
            hook.on_lock_conflict(message)

    # --- operations ---

    def acquire(
        self,
        resource_type: str,
        resource_id: str,
        owner_id: str,
        domain: str,
        *,
        owner_name: str | None = None,
        origin: str | None = None,
        hook: ConflictNotifiable | None = None,
    ) -> bool:
        """Create or renew ``owner_id``'s lock. False if someone else holds it."""
        resource_id = str(resource_id)
        lock = self._live(resource_type, resource_id, domain)
        if lock is not None and lock.owner_id != owner_id:
            self._conflict(lock, resource_id, hook)
            return False

        lock = self.store.upsert(resource_type, resource_id, owner_id, self.clock.now())
        if lock is None:
            # lost the race to another owner's insert
            self._conflict(self.store.find(resource_type, resource_id), resource_id, hook)
            return False

        self._publish(
            locked_event(
                resource_type,
                resource_id,
                owner_id,
                lock.acquired_at,
                channel_name(domain, self.tenancy),
                owner_name=owner_name,
                origin=origin,
            ),
        )
        return True

    def acquire_or_raise(self, resource_type: str, resource_id: str, owner_id: str, domain: str, **kw: Any) -> None:
        if not self.acquire(resource_type, resource_id, owner_id, domain, **kw):
            holder = self.lock_owner(resource_type, resource_id)
            raise LockConflict(resource_type, str(resource_id), holder)

    def release(
        self, resource_type: str, resource_id: str, owner_id: str, domain: str, *, origin: str | None = None
    ) -> bool:
        """Drop ``owner_id``'s lock. Someone else's lock is left alone."""
        resource_id = str(resource_id)
        lock = self.store.find(resource_type, resource_id)
        if lock is None or lock.owner_id != owner_id:
            return False
        if not self.store.delete_if_owner(lock, owner_id):
            return False
        self._publish(
            unlocked_event(
                resource_type, resource_id, self.clock.now(), channel_name(domain, self.tenancy), origin=origin
            ),
        )
        return True

    def is_locked(self, resource_type: str, resource_id: str, owner_id: str, domain: str) -> bool:
        """True when someone other than ``owner_id`` holds a live lock."""
        lock = self._live(resource_type, str(resource_id), domain)
        if lock is None:
            return False
        return lock.owner_id != owner_id

    def lock_owner(self, resource_type: str, resource_id: str) -> str | None:
        lock = self.status(resource_type, resource_id)
        return lock.owner_id if lock else None

    def status(self, resource_type: str, resource_id: str) -> LockRecord | None:
        """The live lock on a key, without side effects."""
        lock = self.store.find(resource_type, str(resource_id))
        if lock is None or self._expired(lock):
            return None
        return lock

    def remaining_seconds(self, lock: LockRecord) -> int:
        return remaining_seconds(lock.acquired_at, self.clock.now(), self.timeout)


def lock_resource(manager: LockManager, resource: Any, owner_id: str, domain: str, **kw: Any) -> bool:
    key = key_for(resource)
    kw.setdefault("hook", hook_for(resource))
    return manager.acquire(key.resource_type, key.resource_id, owner_id, domain, **kw)


def unlock_resource(manager: LockManager, resource: Any, owner_id: str, domain: str, **kw: Any) -> bool:
    key = key_for(resource)
    return manager.release(key.resource_type, key.resource_id, owner_id, domain, **kw)
