from datetime import timedelta

import pytest
from sqlalchemy import func, select, text

from recordlock.locks.exceptions import StoreUnavailable
from recordlock.locks.models import EditLock
from recordlock.locks.store import SqlLockStore

from conftest import T0

TIMEOUT = timedelta(minutes=5)


@pytest.fixture(params=[True, False], ids=["native-upsert", "portable-upsert"])
def store(request, db, clock):
    return SqlLockStore(db, clock, native_upsert=request.param)


def _row_count(db) -> int:
    return db.scalar(select(func.count()).select_from(EditLock))


def test_find_missing_returns_none(store):
    assert store.find("Invoice", "42") is None


def test_upsert_creates_lock(store):
    lock = store.upsert("Invoice", "42", "alice", T0)
    assert lock is not None
    assert lock.key == ("Invoice", "42")
    assert lock.owner_id == "alice"
    assert lock.acquired_at == T0
    assert store.find("Invoice", "42") == lock


def test_upsert_same_owner_renews_in_place(store, db):
    first = store.upsert("Invoice", "42", "alice", T0)
    renewed = store.upsert("Invoice", "42", "alice", T0 + timedelta(minutes=3))
    assert renewed.id == first.id
    assert renewed.acquired_at == T0 + timedelta(minutes=3)
    assert renewed.created_at == first.created_at
    assert _row_count(db) == 1


def test_upsert_other_owner_leaves_lock_alone(store, db):
    store.upsert("Invoice", "42", "alice", T0)
    assert store.upsert("Invoice", "42", "bob", T0 + timedelta(minutes=1)) is None
    lock = store.find("Invoice", "42")
    assert lock.owner_id == "alice"
    assert lock.acquired_at == T0
    assert _row_count(db) == 1


def test_keys_are_independent(store, db):
    store.upsert("Invoice", "42", "alice", T0)
    assert store.upsert("Invoice", "43", "bob", T0) is not None
    assert store.upsert("Order", "42", "bob", T0) is not None
    assert _row_count(db) == 3


def test_delete_if_expired_only_removes_stale_rows(store, clock):
    lock = store.upsert("Invoice", "42", "alice", T0)
    clock.advance(minutes=4)
    assert store.delete_if_expired(lock, TIMEOUT) is False
    clock.advance(minutes=1)
    assert store.delete_if_expired(lock, TIMEOUT) is True
    assert store.find("Invoice", "42") is None


def test_delete_if_expired_spares_a_renewed_lock(store, clock):
    stale = store.upsert("Invoice", "42", "alice", T0)
    clock.advance(minutes=6)
    # renewal lands between the sweep's read and its delete
    store.upsert("Invoice", "42", "alice", clock.now())
    assert store.delete_if_expired(stale, TIMEOUT) is False
    assert store.find("Invoice", "42").acquired_at == clock.now()


def test_delete_if_owner(store):
    lock = store.upsert("Invoice", "42", "alice", T0)
    assert store.delete_if_owner(lock, "bob") is False
    assert store.find("Invoice", "42") is not None
    assert store.delete_if_owner(lock, "alice") is True
    assert store.find("Invoice", "42") is None


def test_list_expired(store, clock):
    store.upsert("Invoice", "1", "alice", T0)
    store.upsert("Invoice", "2", "bob", T0 + timedelta(minutes=3))
    store.upsert("Invoice", "3", "carol", T0 + timedelta(minutes=8))
    clock.set(T0 + timedelta(minutes=9))
    assert [lock.resource_id for lock in store.list_expired(TIMEOUT)] == ["1", "2"]
    assert [lock.resource_id for lock in store.list_expired(TIMEOUT, T0 + timedelta(minutes=5))] == ["1"]


def test_list_expired_applies_hard_ceiling(store, clock):
    store.upsert("Invoice", "1", "alice", T0)
    clock.advance(minutes=61)
    assert len(store.list_expired(timedelta(hours=4))) == 1


def test_store_failure_is_reported_as_unavailable(store, db):
    db.execute(text("DROP TABLE edit_locks"))
    db.commit()
    with pytest.raises(StoreUnavailable) as exc:
        store.find("Invoice", "42")
    assert exc.value.operation == "find"
