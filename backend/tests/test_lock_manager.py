from datetime import timedelta

import pytest
from sqlalchemy import func, select

from recordlock.locks.events import LockEventKind
from recordlock.locks.exceptions import LockConflict
from recordlock.locks.manager import LockManager, lock_resource, unlock_resource
from recordlock.locks.models import EditLock, ResourceKey
from recordlock.locks.resources import CallbackHook

from conftest import T0


class BrokenNotifier:
    def publish(self, channel, event, exclude_self):
        raise ConnectionError("broker down")


class Document:
    """Lockable entity that wants to hear about conflicts."""

    def __init__(self, doc_id):
        self.doc_id = doc_id
        self.messages = []

    def lock_key(self):
        return ResourceKey("Document", str(self.doc_id))

    def on_lock_conflict(self, message):
        self.messages.append(message)

    def on_version_conflict(self, message):
        self.messages.append(message)


def _kinds(notifier):
    return [(e.kind, e.owner_id) for e in notifier.events]


def test_acquire_free_record(manager, notifier):
    assert manager.acquire("Invoice", "42", "alice", "default", owner_name="Alice") is True
    assert manager.lock_owner("Invoice", "42") == "alice"

    channel, event, exclude_self = notifier.published[0]
    assert channel == "locks.default"
    assert event.kind is LockEventKind.locked
    assert event.owner_name == "Alice"
    assert event.occurred_at == T0
    assert exclude_self is True


def test_second_owner_is_refused_and_first_lock_untouched(manager, store, clock):
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=2)
    assert manager.acquire("Invoice", "42", "bob", "default") is False

    lock = store.find("Invoice", "42")
    assert lock.owner_id == "alice"
    assert lock.acquired_at == T0


def test_conflict_message_goes_to_hook_not_exception(manager):
    messages = []
    manager.acquire("Invoice", "42", "alice", "default")
    ok = manager.acquire("Invoice", "42", "bob", "default", hook=CallbackHook(on_lock=messages.append))
    assert ok is False
    assert messages == ["Record #42 is already locked by another user."]


def test_repeated_acquire_renews_single_row(manager, store, db, clock):
    for _ in range(3):
        assert manager.acquire("Invoice", "42", "alice", "default") is True
        clock.advance(minutes=2)
    assert store.find("Invoice", "42").acquired_at == T0 + timedelta(minutes=4)
    assert db.scalar(select(func.count()).select_from(EditLock)) == 1


def test_renewal_keeps_lock_alive_past_original_timeout(manager, clock):
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=4)
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=4)
    assert manager.acquire("Invoice", "42", "bob", "default") is False


def test_expired_lock_is_taken_over(manager, store, notifier, clock):
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=2)
    assert manager.acquire("Invoice", "42", "bob", "default") is False
    clock.set(T0 + timedelta(minutes=6))
    notifier.clear()

    assert manager.acquire("Invoice", "42", "bob", "default") is True
    lock = store.find("Invoice", "42")
    assert lock.owner_id == "bob"
    assert lock.acquired_at == T0 + timedelta(minutes=6)
    assert _kinds(notifier) == [(LockEventKind.unlocked, None), (LockEventKind.locked, "bob")]


def test_hard_ceiling_beats_long_timeout(store, notifier, clock):
    manager = LockManager(store, notifier, clock, timeout_minutes=240)
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=59)
    assert manager.acquire("Invoice", "42", "bob", "default") is False
    clock.advance(minutes=1)
    assert manager.acquire("Invoice", "42", "bob", "default") is True


def test_is_locked_is_false_for_own_lock(manager):
    manager.acquire("Invoice", "42", "alice", "default")
    assert manager.is_locked("Invoice", "42", "alice", "default") is False
    assert manager.is_locked("Invoice", "42", "bob", "default") is True


def test_is_locked_reclaims_expired_lock(manager, store, notifier, clock):
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=5)
    notifier.clear()
    assert manager.is_locked("Invoice", "42", "bob", "default") is False
    assert store.find("Invoice", "42") is None
    assert _kinds(notifier) == [(LockEventKind.unlocked, None)]


def test_is_locked_missing_lock(manager):
    assert manager.is_locked("Invoice", "404", "alice", "default") is False


def test_lock_owner_ignores_expired_lock(manager, store, clock):
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=10)
    assert manager.lock_owner("Invoice", "42") is None
    # reading the owner has no side effects
    assert store.find("Invoice", "42") is not None


def test_release_by_owner(manager, store, notifier):
    manager.acquire("Invoice", "42", "alice", "default")
    notifier.clear()
    assert manager.release("Invoice", "42", "alice", "default") is True
    assert store.find("Invoice", "42") is None
    assert _kinds(notifier) == [(LockEventKind.unlocked, None)]


def test_release_by_non_owner_is_a_no_op(manager, store, notifier):
    manager.acquire("Invoice", "42", "alice", "default")
    before = store.find("Invoice", "42")
    notifier.clear()

    assert manager.release("Invoice", "42", "bob", "default") is False
    assert store.find("Invoice", "42") == before
    assert notifier.events == []


def test_release_missing_lock(manager, notifier):
    assert manager.release("Invoice", "42", "alice", "default") is False
    assert notifier.events == []


def test_notifier_failure_never_breaks_lock_operations(store, clock):
    manager = LockManager(store, BrokenNotifier(), clock)
    assert manager.acquire("Invoice", "42", "alice", "default") is True
    assert store.find("Invoice", "42").owner_id == "alice"
    assert manager.release("Invoice", "42", "alice", "default") is True
    assert store.find("Invoice", "42") is None


def test_broadcast_self_flag(store, notifier, clock):
    manager = LockManager(store, notifier, clock, broadcast_self=True)
    manager.acquire("Invoice", "42", "alice", "default", origin="socket-1")
    _, event, exclude_self = notifier.published[0]
    assert exclude_self is False
    assert event.origin == "socket-1"


def test_tenant_channel_naming(store, notifier, clock):
    manager = LockManager(store, notifier, clock, tenancy=True)
    manager.acquire("Invoice", "42", "alice", "acme.example.com")
    assert notifier.published[0][0] == "tenant.acme.example.com.locks"


def test_acquire_or_raise(manager):
    manager.acquire("Invoice", "42", "alice", "default")
    with pytest.raises(LockConflict) as exc:
        manager.acquire_or_raise("Invoice", "42", "bob", "default")
    assert exc.value.owner_id == "alice"
    assert "#42" in str(exc.value)


def test_integer_ids_are_normalised(manager):
    assert manager.acquire("Invoice", 42, "alice", "default") is True
    assert manager.lock_owner("Invoice", "42") == "alice"
    assert manager.is_locked("Invoice", 42, "bob", "default") is True


def test_lockable_resource_receives_conflict_messages(manager):
    doc = Document(7)
    assert lock_resource(manager, doc, "alice", "default") is True
    assert lock_resource(manager, doc, "bob", "default") is False
    assert doc.messages == ["Record #7 is already locked by another user."]
    assert unlock_resource(manager, doc, "alice", "default") is True
    assert manager.lock_owner("Document", "7") is None


def test_status_reports_remaining_time(manager, clock):
    manager.acquire("Invoice", "42", "alice", "default")
    clock.advance(minutes=2)
    lock = manager.status("Invoice", "42")
    assert manager.remaining_seconds(lock) == 180
