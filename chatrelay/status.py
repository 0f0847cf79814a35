"""
Message delivery lifecycle.

State Machine:
    sent → delivered → read     (outbound)
    sent → read                 (provider coalesced the receipts)
    received → read             (inbound, when the viewer opens the thread)

Moving to an equal or earlier state is an idempotent no-op, never an error,
so late or repeated provider receipts cannot regress a message. ``received``
never joins the outbound chain.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from chatrelay.domain import EventSink, Message, MessageStatus, StatusChangedEvent, ThreadReadEvent
from chatrelay.errors import NotFoundError
from chatrelay.locks import KeyedLock
from chatrelay.metrics import record_status_update
from chatrelay.normalize import parse_status
from chatrelay.storage import MessageStore

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.READ}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.RECEIVED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
}


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    return target in LEGAL_TRANSITIONS[current]


@dataclass(frozen=True)
class StatusResult:
    message: Message
    changed: bool
    old_status: MessageStatus


@dataclass(frozen=True)
class ThreadReadResult:
    contact_id: str
    message_ids: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.message_ids)


class StatusTracker:
    """Applies status transitions and emits ``status_changed`` / ``thread_read``."""

    def __init__(self, store: MessageStore, locks: KeyedLock, emit: EventSink):
        self._store = store
        self._locks = locks
        self._emit = emit

    async def update_status(
        self, ref: str, new_status: Union[str, MessageStatus]
    ) -> StatusResult:
        """
        Move one message to ``new_status``.

        Args:
            ref: message id, or the correlation id a provider echoed back
            new_status: target status

        Raises:
            ValidationError: unknown status value
            NotFoundError: no message matches ``ref``
        """
        target = parse_status(new_status)
        message = await self._lookup(ref)
        if message is None:
            logger.warning(f"Status update for unknown message: ref={ref}, status={target.value}")
            record_status_update("not_found")
            raise NotFoundError(f"Message {ref} not found", details={"ref": ref})
        return await asyncio.shield(self._apply(message, target))

    async def _lookup(self, ref: str) -> Optional[Message]:
        message = await asyncio.to_thread(self._store.get_message_by_id, ref)
        if message is None:
            message = await asyncio.to_thread(self._store.get_message_by_correlation_id, ref)
        return message

    async def _apply(self, message: Message, target: MessageStatus) -> StatusResult:
        async with self._locks.hold(message.contact_id):
            # Re-read under the lock: another update may have landed first
            current = await asyncio.to_thread(self._store.get_message_by_id, message.id)
            if current is None:
                record_status_update("not_found")
                raise NotFoundError(
                    f"Message {message.id} was removed",
                    details={"ref": message.id},
                )

            old_status = current.status
            if not can_transition(old_status, target):
                logger.debug(f"Status no-op: {current.id} {old_status.value} -> {target.value}")
                record_status_update("noop")
                return StatusResult(message=current, changed=False, old_status=old_status)

            updated = await asyncio.to_thread(
                self._store.update_message_status, current.id, target
            )
            if updated is None:
                record_status_update("not_found")
                raise NotFoundError(
                    f"Message {current.id} was removed",
                    details={"ref": current.id},
                )

            logger.info(f"Status changed: {updated.id} {old_status.value} -> {target.value}")
            record_status_update("changed")
            await self._emit(StatusChangedEvent(
                contact_id=updated.contact_id,
                message_id=updated.id,
                direction=updated.direction,
                old_status=old_status,
                new_status=target,
            ))
            return StatusResult(message=updated, changed=True, old_status=old_status)

    async def mark_thread_read(self, contact_id: str) -> ThreadReadResult:
        """
        Mark every unread inbound message of a thread read.

        Emits a single ``thread_read`` event however many messages changed,
        and nothing when the thread was already read.
        """
        return await asyncio.shield(self._mark_thread_read(contact_id))

    async def _mark_thread_read(self, contact_id: str) -> ThreadReadResult:
        async with self._locks.hold(contact_id):
            message_ids = await asyncio.to_thread(self._store.mark_inbound_read, contact_id)
            if not message_ids:
                return ThreadReadResult(contact_id=contact_id)

            logger.info(f"Thread read: contact={contact_id}, messages={len(message_ids)}")
            record_status_update("changed")
            await self._emit(ThreadReadEvent(contact_id=contact_id, message_ids=message_ids))
            return ThreadReadResult(contact_id=contact_id, message_ids=message_ids)
