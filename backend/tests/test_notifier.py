import asyncio

from recordlock.auth.utils import Actor
from recordlock.locks.events import LockEventKind, channel_name, locked_event, unlocked_event
from recordlock.locks.notifier import ChannelHub, QueuedNotifier, RecordingNotifier, safe_publish
from recordlock.shared.config import Settings
from recordlock.tenants.resolver import (
    ActorTenantResolver,
    StaticTenantResolver,
    authorize_channel,
    resolve_domain,
)

from conftest import T0


class Exploding:
    def publish(self, channel, event, exclude_self):
        raise ConnectionError("broker down")


def _locked(origin=None, channel="locks.default"):
    return locked_event("Invoice", "42", "alice", T0, channel, owner_name="Alice", origin=origin)


def test_channel_names():
    assert channel_name("default", False) == "locks.default"
    assert channel_name("acme.example.com", True) == "tenant.acme.example.com.locks"


def test_locked_payload():
    event = _locked()
    assert event.name == "ModelLocked"
    assert event.payload() == {
        "type": "locked",
        "model_type": "Invoice",
        "model_id": "42",
        "message": "Record #42 is being edited by Alice.",
        "user": {"id": "alice", "name": "Alice"},
        "locked_at": T0.isoformat(),
    }
    frame = event.envelope()
    assert frame["event"] == "ModelLocked"
    assert frame["channel"] == "locks.default"


def test_unlocked_payload_has_no_user():
    event = unlocked_event("Invoice", "42", T0, "locks.default")
    assert event.kind is LockEventKind.unlocked
    assert event.name == "ModelUnlocked"
    payload = event.payload()
    assert payload["type"] == "unlocked"
    assert "user" not in payload
    assert payload["message"] == "Record #42 has been released."


def test_origin_is_ignored_in_equality():
    assert _locked(origin="a") == _locked(origin="b")


def test_safe_publish_swallows_transport_errors(caplog):
    assert safe_publish(Exploding(), "locks.default", _locked(), True) is False
    assert "could not publish to locks.default" in caplog.text
    assert safe_publish(RecordingNotifier(), "locks.default", _locked(), True) is True


def test_queued_notifier_delivers_in_order():
    inner = RecordingNotifier()
    queued = QueuedNotifier(inner, name="test")
    try:
        for rid in ("1", "2", "3"):
            queued.publish("locks.default", unlocked_event("Invoice", rid, T0, "locks.default"), True)
        queued.flush()
    finally:
        queued.stop()
    assert [e.resource_id for e in inner.events] == ["1", "2", "3"]


def test_queued_notifier_survives_failing_transport():
    queued = QueuedNotifier(Exploding(), name="test")
    try:
        queued.publish("locks.default", _locked(), True)
        queued.publish("locks.default", _locked(), True)
        queued.flush()
    finally:
        queued.stop()


def test_hub_fans_out_and_skips_originating_session():
    async def scenario():
        hub = ChannelHub()
        mine = hub.subscribe("locks.default", "tab-1")
        other = hub.subscribe("locks.default", "tab-2")
        elsewhere = hub.subscribe("locks.other", "tab-3")
        assert hub.subscriber_count("locks.default") == 2

        hub.publish("locks.default", _locked(origin="tab-1"), True)
        frame = await asyncio.wait_for(other.get(), 1)
        await asyncio.sleep(0)
        assert frame["event"] == "ModelLocked"
        assert mine.queue.empty()
        assert elsewhere.queue.empty()

        hub.publish("locks.default", _locked(origin="tab-1"), False)
        frame = await asyncio.wait_for(mine.get(), 1)
        assert frame["data"]["model_id"] == "42"

        hub.unsubscribe(mine)
        hub.unsubscribe(other)
        assert hub.subscriber_count("locks.default") == 0

    asyncio.run(scenario())


def test_hub_accepts_events_from_worker_threads():
    async def scenario():
        hub = ChannelHub()
        sub = hub.subscribe("locks.default")
        queued = QueuedNotifier(hub, name="test")
        try:
            queued.publish("locks.default", unlocked_event("Invoice", "7", T0, "locks.default"), True)
            frame = await asyncio.wait_for(sub.get(), 2)
        finally:
            queued.stop()
        assert frame["event"] == "ModelUnlocked"

    asyncio.run(scenario())


def test_resolve_domain():
    plain = Settings(_env_file=None)
    tenanted = Settings(
        _env_file=None,
        LOCKING_TENANCY=True,
        TENANT_DATABASE_URL="sqlite:///tenant_{tenant}.db",
        LOCKING_DEFAULT_DOMAIN="central",
    )
    resolver = StaticTenantResolver("acme.example.com")

    assert resolve_domain(plain, resolver) == "default"
    assert resolve_domain(tenanted, resolver) == "acme.example.com"
    assert resolve_domain(tenanted) == "central"
    assert resolve_domain(tenanted, ActorTenantResolver(Actor("u1"), "central")) == "central"


def test_authorize_channel():
    acme = Actor("u1", domain="acme.example.com")
    assert authorize_channel(acme, "anything", tenancy=False)
    assert authorize_channel(acme, "acme.example.com", tenancy=True)
    assert not authorize_channel(acme, "globex.example.com", tenancy=True)
    assert not authorize_channel(Actor("u2"), "acme.example.com", tenancy=True)
    assert not authorize_channel(None, "default", tenancy=False)
