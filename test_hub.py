"""
Tests for the fanout hub.

Tests cover:
- Delivery to thread watchers and list watchers, once per viewer
- One thread per viewer; subscribing elsewhere replaces it
- Disconnect removes the viewer everywhere
- Per-viewer ordering, slow and broken viewers
"""

import asyncio

import pytest
import pytest_asyncio

from chatrelay.domain import MessageRemovedEvent, ThreadReadEvent
from chatrelay.errors import NotFoundError
from chatrelay.hub import FanoutHub

from conftest import FakeConnection


async def settle():
    """Let writer tasks drain their queues."""
    for _ in range(20):
        await asyncio.sleep(0)


def read_event(contact_id: str, *ids: str) -> ThreadReadEvent:
    return ThreadReadEvent(contact_id=contact_id, message_ids=list(ids))


@pytest_asyncio.fixture
async def hub():
    hub = FanoutHub(queue_size=8)
    yield hub
    await hub.close()


class TestRouting:
    """Who receives what."""

    @pytest.mark.asyncio
    async def test_list_watchers_receive_every_contact(self, hub):
        viewer = FakeConnection()
        hub.connect("v1", viewer)

        hub.publish(read_event("c1", "m1"))
        hub.publish(read_event("c2", "m2"))
        await settle()

        assert viewer.types() == ["thread_read", "thread_read"]
        assert [f["data"]["contact_id"] for f in viewer.frames] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_thread_watchers_only_see_their_thread(self, hub):
        viewer = FakeConnection()
        hub.connect("v1", viewer)
        hub.watch_list("v1", enabled=False)
        hub.subscribe("v1", "c1")

        hub.publish(read_event("c1", "m1"))
        hub.publish(read_event("c2", "m2"))
        await settle()

        assert [f["data"]["contact_id"] for f in viewer.frames] == ["c1"]

    @pytest.mark.asyncio
    async def test_union_is_delivered_once_per_viewer(self, hub):
        viewer = FakeConnection()
        hub.connect("v1", viewer)
        hub.subscribe("v1", "c1")

        queued = hub.publish(read_event("c1", "m1"))
        await settle()

        assert queued == 1
        assert len(viewer.frames) == 1

    @pytest.mark.asyncio
    async def test_wire_envelope(self, hub):
        viewer = FakeConnection()
        hub.connect("v1", viewer)

        hub.publish(MessageRemovedEvent(contact_id="c1", message_id="m1"))
        await settle()

        assert viewer.frames == [{
            "type": "message_removed",
            "data": {"contact_id": "c1", "message_id": "m1"},
        }]


class TestSubscriptions:
    """Subscription bookkeeping."""

    @pytest.mark.asyncio
    async def test_subscribe_replaces_previous_thread(self, hub):
        hub.connect("v1", FakeConnection())
        assert hub.subscribe("v1", "c1") is None
        assert hub.subscribe("v1", "c2") == "c1"

        assert hub.thread_of("v1") == "c2"
        hub.watch_list("v1", enabled=False)
        assert hub.watchers("c1") == set()
        assert hub.watchers("c2") == {"v1"}

    @pytest.mark.asyncio
    async def test_unsubscribe(self, hub):
        hub.connect("v1", FakeConnection())
        hub.subscribe("v1", "c1")

        assert hub.unsubscribe("v1", "c2") is False
        assert hub.unsubscribe("v1", "c1") is True
        assert hub.thread_of("v1") is None

    @pytest.mark.asyncio
    async def test_subscribe_requires_connection(self, hub):
        with pytest.raises(NotFoundError):
            hub.subscribe("ghost", "c1")

    @pytest.mark.asyncio
    async def test_disconnect_removes_viewer_everywhere(self, hub):
        viewer = FakeConnection()
        hub.connect("v1", viewer)
        hub.subscribe("v1", "c1")

        hub.disconnect("v1")

        assert not hub.is_connected("v1")
        assert hub.watchers("c1") == set()
        assert hub.publish(read_event("c1", "m1")) == 0
        await settle()
        assert viewer.frames == []

    @pytest.mark.asyncio
    async def test_reconnect_replaces_connection(self, hub):
        old, new = FakeConnection(), FakeConnection()
        hub.connect("v1", old)
        hub.connect("v1", new)

        # The old socket closing must not drop the new one
        hub.disconnect("v1", connection=old)
        assert hub.is_connected("v1")

        hub.publish(read_event("c1", "m1"))
        await settle()
        assert old.frames == []
        assert len(new.frames) == 1


class TestDelivery:
    """Ordering and failure isolation."""

    @pytest.mark.asyncio
    async def test_events_arrive_in_publish_order(self, hub):
        viewer = FakeConnection()
        hub.connect("v1", viewer)

        for i in range(5):
            hub.publish(read_event("c1", f"m{i}"))
        await settle()

        assert [f["data"]["message_ids"] for f in viewer.frames] == [[f"m{i}"] for i in range(5)]

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self, hub):
        viewer = FakeConnection()
        hub.connect("v1", viewer)

        # Nothing drains until we yield, so the queue (size 8) overflows
        queued = [hub.publish(read_event("c1", f"m{i}")) for i in range(12)]
        await settle()

        assert sum(queued) == 8
        assert len(viewer.frames) == 8

    @pytest.mark.asyncio
    async def test_broken_viewer_is_dropped_others_unaffected(self, hub):
        broken, healthy = FakeConnection(fail=True), FakeConnection()
        hub.connect("broken", broken)
        hub.connect("healthy", healthy)

        hub.publish(read_event("c1", "m1"))
        await settle()

        assert not hub.is_connected("broken")
        assert hub.is_connected("healthy")
        assert len(healthy.frames) == 1
        assert broken.close_code == 1011
        assert healthy.close_code is None

    @pytest.mark.asyncio
    async def test_send_to_single_viewer(self, hub):
        a, b = FakeConnection(), FakeConnection()
        hub.connect("a", a)
        hub.connect("b", b)

        assert hub.send_to("a", {"type": "pong", "data": {}}) is True
        assert hub.send_to("ghost", {"type": "pong", "data": {}}) is False
        await settle()

        assert a.types() == ["pong"]
        assert b.frames == []


@pytest.mark.asyncio
async def test_close_disconnects_everyone():
    hub = FanoutHub()
    hub.connect("v1", FakeConnection())
    hub.connect("v2", FakeConnection())

    await hub.close()

    assert len(hub) == 0
