"""
Tests for the message status state machine.

Tests cover:
- Legal transitions and idempotent no-ops (no regression, ever)
- Lookup by correlation id
- Unknown references and unknown status values
- Bulk mark-read emits one event
"""

from datetime import datetime, timezone

import pytest

from chatrelay.domain import (
    Direction,
    Message,
    MessageKind,
    MessageStatus,
    StatusChangedEvent,
    TextContent,
    ThreadReadEvent,
)
from chatrelay.errors import NotFoundError, ValidationError
from chatrelay.locks import KeyedLock
from chatrelay.status import LEGAL_TRANSITIONS, StatusTracker, can_transition

SENT = MessageStatus.SENT
DELIVERED = MessageStatus.DELIVERED
READ = MessageStatus.READ
RECEIVED = MessageStatus.RECEIVED


def message(message_id, contact_id="c1", direction=Direction.OUTBOUND, status=SENT, ts=100,
            correlation_id=None) -> Message:
    return Message(
        id=message_id,
        contact_id=contact_id,
        direction=direction,
        kind=MessageKind.TEXT,
        content=TextContent(text=message_id),
        body=message_id,
        timestamp=datetime.fromtimestamp(ts, tz=timezone.utc),
        status=status,
        correlation_id=correlation_id,
    )


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)


@pytest.fixture
def events():
    return Recorder()


@pytest.fixture
def tracker(store, events):
    return StatusTracker(store, KeyedLock(), emit=events)


class TestTransitionTable:
    """The legal transition relation."""

    @pytest.mark.parametrize("current,target", [
        (SENT, DELIVERED), (SENT, READ), (DELIVERED, READ), (RECEIVED, READ),
    ])
    def test_legal(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (DELIVERED, SENT), (READ, DELIVERED), (READ, SENT), (READ, READ),
        (SENT, SENT), (RECEIVED, DELIVERED), (SENT, RECEIVED), (RECEIVED, RECEIVED),
    ])
    def test_not_legal(self, current, target):
        assert not can_transition(current, target)

    def test_read_is_terminal(self):
        assert LEGAL_TRANSITIONS[READ] == frozenset()


class TestUpdateStatus:
    """Single-message updates."""

    @pytest.mark.asyncio
    async def test_sent_delivered_read(self, tracker, store, events):
        store.put_message(message("o1"))

        delivered = await tracker.update_status("o1", "delivered")
        read = await tracker.update_status("o1", READ)

        assert delivered.changed and delivered.old_status == SENT
        assert read.changed and read.old_status == DELIVERED
        assert store.get_message_by_id("o1").status == READ
        assert [(e.old_status, e.new_status) for e in events.events] == [
            (SENT, DELIVERED),
            (DELIVERED, READ),
        ]
        assert all(isinstance(e, StatusChangedEvent) for e in events.events)

    @pytest.mark.asyncio
    async def test_late_receipt_does_not_regress(self, tracker, store, events):
        store.put_message(message("o1"))
        await tracker.update_status("o1", READ)

        result = await tracker.update_status("o1", DELIVERED)

        assert result.changed is False
        assert result.message.status == READ
        assert store.get_message_by_id("o1").status == READ
        assert len(events.events) == 1

    @pytest.mark.asyncio
    async def test_repeated_update_is_idempotent(self, tracker, store, events):
        store.put_message(message("o1"))
        await tracker.update_status("o1", DELIVERED)
        result = await tracker.update_status("o1", DELIVERED)

        assert result.changed is False
        assert len(events.events) == 1

    @pytest.mark.asyncio
    async def test_received_never_joins_outbound_chain(self, tracker, store, events):
        store.put_message(message("i1", direction=Direction.INBOUND, status=RECEIVED))

        result = await tracker.update_status("i1", DELIVERED)

        assert result.changed is False
        assert store.get_message_by_id("i1").status == RECEIVED
        assert events.events == []

    @pytest.mark.asyncio
    async def test_lookup_by_correlation_id(self, tracker, store, events):
        store.put_message(message("o1", correlation_id="wamid.xyz"))

        result = await tracker.update_status("wamid.xyz", DELIVERED)

        assert result.changed is True
        assert result.message.id == "o1"
        assert events.events[0].message_id == "o1"

    @pytest.mark.asyncio
    async def test_unknown_reference(self, tracker, events):
        with pytest.raises(NotFoundError):
            await tracker.update_status("nope", DELIVERED)
        assert events.events == []

    @pytest.mark.asyncio
    async def test_unknown_status_value(self, tracker, store):
        store.put_message(message("o1"))
        with pytest.raises(ValidationError):
            await tracker.update_status("o1", "failed")
        assert store.get_message_by_id("o1").status == SENT


class TestMarkThreadRead:
    """Bulk mark-read of a thread."""

    @pytest.mark.asyncio
    async def test_marks_only_unread_inbound(self, tracker, store, events):
        store.put_message(message("i1", direction=Direction.INBOUND, status=RECEIVED, ts=100))
        store.put_message(message("i2", direction=Direction.INBOUND, status=RECEIVED, ts=101))
        store.put_message(message("o1", status=SENT, ts=102))
        store.put_message(message("x1", contact_id="c2", direction=Direction.INBOUND, status=RECEIVED))

        result = await tracker.mark_thread_read("c1")

        assert result.changed
        assert result.message_ids == ["i1", "i2"]
        assert store.count_unread("c1") == 0
        assert store.get_message_by_id("o1").status == SENT
        assert store.count_unread("c2") == 1

        assert len(events.events) == 1
        assert isinstance(events.events[0], ThreadReadEvent)
        assert events.events[0].message_ids == ["i1", "i2"]

    @pytest.mark.asyncio
    async def test_nothing_to_mark_emits_nothing(self, tracker, store, events):
        store.put_message(message("o1"))

        result = await tracker.mark_thread_read("c1")

        assert not result.changed
        assert events.events == []
