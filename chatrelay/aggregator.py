"""
Conversation list maintained incrementally from core events.

The aggregate is a cache of the message log, never a source of truth:
for every contact, ``unread_count`` must equal the number of inbound
messages that are not read, and ``rebuild()`` must reproduce the live
entries exactly. Events are applied under the contact's lock (the caller
holds it), so ``apply`` itself never locks; ``load``, ``rebuild`` and
``check_drift`` take each contact's lock in turn.
"""

import asyncio
import logging
from typing import Optional

from chatrelay.domain import (
    ConversationEntry,
    Direction,
    Event,
    IngestedEvent,
    MessageRemovedEvent,
    MessageStatus,
    StatusChangedEvent,
    ThreadReadEvent,
)
from chatrelay.locks import KeyedLock
from chatrelay.storage import MessageStore

logger = logging.getLogger(__name__)


class ConversationAggregator:
    """One ConversationEntry per contact, held in memory."""

    def __init__(self, store: MessageStore, locks: KeyedLock):
        self._store = store
        self._locks = locks
        self._entries: dict[str, ConversationEntry] = {}

    def get(self, contact_id: str) -> Optional[ConversationEntry]:
        return self._entries.get(contact_id)

    def list_conversations(self) -> list[ConversationEntry]:
        """Entries, most recent conversation first."""
        return sorted(
            self._entries.values(),
            key=lambda entry: entry.last_message.sort_key(),
            reverse=True,
        )

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Incremental updates
    # -------------------------------------------------------------------------

    async def apply(self, event: Event) -> bool:
        """
        Fold one event into the aggregate.

        Returns:
            True if the contact's entry changed (or was removed)
        """
        if isinstance(event, IngestedEvent):
            return self._apply_ingested(event)
        if isinstance(event, StatusChangedEvent):
            return await self._apply_status_changed(event)
        if isinstance(event, (ThreadReadEvent, MessageRemovedEvent)):
            return await self._recount(event.contact_id)
        return False

    def _apply_ingested(self, event: IngestedEvent) -> bool:
        message = event.message
        unread = 1 if message.is_unread else 0
        entry = self._entries.get(message.contact_id)
        if entry is None:
            self._entries[message.contact_id] = ConversationEntry(
                contact_id=message.contact_id,
                last_message=message,
                unread_count=unread,
                message_count=1,
            )
            return True

        last = entry.last_message
        # Late (out-of-order) deliveries must not regress the preview
        if message.sort_key() >= last.sort_key():
            last = message
        self._entries[message.contact_id] = entry.model_copy(update={
            "last_message": last,
            "unread_count": entry.unread_count + unread,
            "message_count": entry.message_count + 1,
        })
        return True

    async def _apply_status_changed(self, event: StatusChangedEvent) -> bool:
        entry = self._entries.get(event.contact_id)
        if entry is None:
            return await self._recount(event.contact_id)

        unread = entry.unread_count
        was_unread = event.direction == Direction.INBOUND and event.old_status != MessageStatus.READ
        is_unread = event.direction == Direction.INBOUND and event.new_status != MessageStatus.READ
        if was_unread and not is_unread:
            unread -= 1
        elif is_unread and not was_unread:
            unread += 1
        if unread < 0:
            logger.warning(f"Unread count underflow for {event.contact_id}, recounting")
            return await self._recount(event.contact_id)

        last = entry.last_message
        if last.id == event.message_id:
            last = last.model_copy(update={"status": event.new_status})
        updated = entry.model_copy(update={"last_message": last, "unread_count": unread})
        if updated == entry:
            return False
        self._entries[event.contact_id] = updated
        return True

    async def _recount(self, contact_id: str) -> bool:
        entry = await self._summarize(contact_id)
        previous = self._entries.get(contact_id)
        if entry is None:
            self._entries.pop(contact_id, None)
        else:
            self._entries[contact_id] = entry
        return entry != previous

    async def _summarize(self, contact_id: str) -> Optional[ConversationEntry]:
        latest, unread, total = await asyncio.to_thread(self._store.summarize_contact, contact_id)
        if latest is None:
            return None
        return ConversationEntry(
            contact_id=contact_id,
            last_message=latest,
            unread_count=unread,
            message_count=total,
        )

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def load(self) -> None:
        """Populate the aggregate at start-up; nothing is reported as drift."""
        await self._recompute_all()
        logger.info(f"Conversation aggregate loaded: {len(self._entries)} conversations")

    async def rebuild(self) -> list[str]:
        """
        Recompute every entry from the store, one scan per contact.

        Returns the contacts whose live entry differed from the store (drift),
        which is empty on a healthy process. Entries missing from the live
        map count as drift.
        """
        drifted = await self._recompute_all()
        logger.info(f"Conversation aggregate rebuilt: {len(self._entries)} conversations")
        if drifted:
            logger.warning(f"Conversation aggregate drift corrected for: {sorted(drifted)}")
        return drifted

    async def _recompute_all(self) -> list[str]:
        contact_ids = await asyncio.to_thread(self._store.list_contact_ids)
        drifted = []
        for contact_id in contact_ids:
            async with self._locks.hold(contact_id):
                if await self._recount(contact_id):
                    drifted.append(contact_id)

        stale = set(self._entries) - set(contact_ids)
        for contact_id in stale:
            async with self._locks.hold(contact_id):
                if await self._recount(contact_id):
                    drifted.append(contact_id)
        return drifted

    async def check_drift(self) -> list[str]:
        """Contacts whose live entry differs from the store; nothing is modified."""
        contact_ids = set(await asyncio.to_thread(self._store.list_contact_ids))
        contact_ids |= set(self._entries)
        drifted = []
        for contact_id in sorted(contact_ids):
            async with self._locks.hold(contact_id):
                if await self._summarize(contact_id) != self._entries.get(contact_id):
                    drifted.append(contact_id)
        return drifted
