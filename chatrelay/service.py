"""
Chat core composition and query surface.

ChatService wires the Ingestor, the StatusTracker, the conversation
aggregate and the fanout hub around one MessageStore, and exposes the
operations the HTTP/WebSocket layer calls. Every core event goes through
``_dispatch`` while the contact's lock is held and after the store write:
the aggregate is updated first, then the event and the refreshed
conversation entry are published.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from chatrelay.aggregator import ConversationAggregator
from chatrelay.domain import (
    Contact,
    ContactUpdatedEvent,
    ConversationEntry,
    ConversationUpdatedEvent,
    Event,
    Message,
    MessageRemovedEvent,
    MessageStatus,
    Presence,
    PresenceChangedEvent,
)
from chatrelay.errors import NotFoundError
from chatrelay.hub import FanoutHub
from chatrelay.ingestor import IngestResult, Ingestor
from chatrelay.locks import KeyedLock
from chatrelay.normalize import InboundMessage, SendRequest, normalize_webhook
from chatrelay.schemas import WebhookRequest
from chatrelay.status import StatusResult, StatusTracker, ThreadReadResult
from chatrelay.storage import SqlMessageStore
from chatrelay.utils import placeholder_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadPage:
    contact: Contact
    messages: list[Message]
    has_more: bool
    total_messages: int
    next_before: Optional[datetime] = None
    next_before_seq: Optional[int] = None


@dataclass
class WebhookOutcome:
    ingested: int = 0
    duplicates: int = 0
    status_updates: int = 0
    not_found: int = 0
    results: list[IngestResult] = field(default_factory=list)


class ChatService:
    """Owns the chat core for one process."""

    def __init__(
        self,
        store: SqlMessageStore,
        hub: FanoutHub,
        page_size: int = 50,
        simulate_status: bool = False,
        delivered_delay: float = 1.0,
        read_delay: float = 3.0,
    ):
        self.store = store
        self.hub = hub
        self.locks = KeyedLock()
        self.aggregator = ConversationAggregator(store, self.locks)
        self.ingestor = Ingestor(store, self.locks, emit=self._dispatch)
        self.tracker = StatusTracker(store, self.locks, emit=self._dispatch)
        self._page_size = page_size
        self._simulate_status = simulate_status
        self._delivered_delay = delivered_delay
        self._read_delay = read_delay
        self._background: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Load the conversation aggregate from the store."""
        await self.aggregator.load()
        logger.info(f"Chat service started with {len(self.aggregator)} conversations")

    async def stop(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.hub.close()
        logger.info("Chat service stopped")

    async def _dispatch(self, event: Event) -> None:
        changed = await self.aggregator.apply(event)
        self.hub.publish(event)
        if changed:
            self.hub.publish(ConversationUpdatedEvent(
                contact_id=event.contact_id,
                entry=self.aggregator.get(event.contact_id),
            ))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def ingest(self, event: Union[InboundMessage, SendRequest]) -> IngestResult:
        return await self.ingestor.ingest(event)

    async def send_message(self, contact_id: str, body: str) -> IngestResult:
        """Store a locally-originated text message with status ``sent``."""
        result = await self.ingestor.ingest(SendRequest(contact_id=contact_id, body=body))
        if self._simulate_status and not result.is_duplicate:
            self._spawn(self._simulate_receipts(result.message.id))
        return result

    async def update_status(
        self, ref: str, status: Union[str, MessageStatus]
    ) -> StatusResult:
        return await self.tracker.update_status(ref, status)

    async def mark_thread_read(self, contact_id: str) -> ThreadReadResult:
        return await self.tracker.mark_thread_read(contact_id)

    async def handle_webhook(self, payload: WebhookRequest) -> WebhookOutcome:
        """
        Apply one provider delivery: messages first, then statuses.

        The whole delivery is validated before anything is written. Statuses
        for unknown messages are counted and skipped.
        """
        batch = normalize_webhook(payload)
        outcome = WebhookOutcome()

        for message in batch.messages:
            result = await self.ingestor.ingest(message)
            outcome.results.append(result)
            if result.is_duplicate:
                outcome.duplicates += 1
            else:
                outcome.ingested += 1

        for update in batch.statuses:
            try:
                result = await self.tracker.update_status(update.ref, update.status)
            except NotFoundError:
                outcome.not_found += 1
                continue
            if result.changed:
                outcome.status_updates += 1

        logger.info(
            f"Webhook applied: ingested={outcome.ingested}, duplicates={outcome.duplicates}, "
            f"status_updates={outcome.status_updates}, not_found={outcome.not_found}"
        )
        return outcome

    async def delete_message(self, message_id: str) -> Message:
        """
        Administrative removal of one message.

        Raises:
            NotFoundError: no such message
        """
        message = await asyncio.to_thread(self.store.get_message_by_id, message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found", details={"ref": message_id})
        return await asyncio.shield(self._delete(message))

    async def _delete(self, message: Message) -> Message:
        async with self.locks.hold(message.contact_id):
            removed = await asyncio.to_thread(self.store.delete_message, message.id)
            if removed is None:
                raise NotFoundError(f"Message {message.id} not found", details={"ref": message.id})
            logger.info(f"Message removed: {removed.id} (contact={removed.contact_id})")
            await self._dispatch(MessageRemovedEvent(
                contact_id=removed.contact_id,
                message_id=removed.id,
            ))
            return removed

    async def set_presence(self, contact_id: str, presence: Presence) -> Contact:
        contact = await asyncio.to_thread(self.store.set_presence, contact_id, presence)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found", details={"contact_id": contact_id})
        self.hub.publish(PresenceChangedEvent(contact_id=contact_id, contact=contact))
        return contact

    async def update_contact(
        self,
        contact_id: str,
        display_name: Optional[str] = None,
        avatar_ref: Optional[str] = None,
    ) -> Contact:
        """Edit profile fields of a known contact; ``None`` leaves a field as is."""
        contact = await self.require_contact(contact_id)
        changes = {}
        if display_name is not None:
            changes["display_name"] = display_name.strip() or contact.display_name
        if avatar_ref is not None:
            changes["avatar_ref"] = avatar_ref or None
        if not changes:
            return contact
        updated = await asyncio.to_thread(
            self.store.upsert_contact, contact.model_copy(update=changes)
        )
        self.hub.publish(ContactUpdatedEvent(contact_id=contact_id, contact=updated))
        return updated

    async def rebuild_conversations(self) -> list[str]:
        return await self.aggregator.rebuild()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_conversations(self) -> list[ConversationEntry]:
        return self.aggregator.list_conversations()

    async def list_conversations_with_contacts(self) -> list[tuple[ConversationEntry, Contact]]:
        entries = self.aggregator.list_conversations()
        contacts = await asyncio.to_thread(
            self.store.get_contacts, [entry.contact_id for entry in entries]
        )
        return [
            (entry, contacts.get(entry.contact_id) or self._placeholder(entry.contact_id))
            for entry in entries
        ]

    async def get_thread(
        self,
        contact_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
        mark_read: bool = False,
        before_seq: Optional[int] = None,
    ) -> ThreadPage:
        """
        One page of a thread, oldest first.

        The cursor is ``(before, before_seq)``; when more history exists the
        page carries the cursor for the next older page.

        With ``mark_read`` the thread is marked read before the page is read,
        so the page reflects the new statuses.
        """
        if mark_read:
            await self.tracker.mark_thread_read(contact_id)

        limit = limit or self._page_size
        messages = await asyncio.to_thread(
            self.store.list_messages, contact_id, limit + 1, before, before_seq
        )
        has_more = len(messages) > limit
        if has_more:
            messages = messages[1:]
        total = await asyncio.to_thread(self.store.count_messages, contact_id)
        return ThreadPage(
            contact=await self.get_contact(contact_id),
            messages=messages,
            has_more=has_more,
            total_messages=total,
            next_before=messages[0].timestamp if has_more else None,
            next_before_seq=messages[0].seq if has_more else None,
        )

    async def get_contact(self, contact_id: str) -> Contact:
        """The stored contact, or a placeholder for an unknown one."""
        contact = await asyncio.to_thread(self.store.get_contact, contact_id)
        return contact or self._placeholder(contact_id)

    async def require_contact(self, contact_id: str) -> Contact:
        contact = await asyncio.to_thread(self.store.get_contact, contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found", details={"contact_id": contact_id})
        return contact

    async def list_contacts(
        self,
        search: Optional[str] = None,
        online_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Contact], int]:
        return await asyncio.to_thread(
            self.store.list_contacts, search, online_only, limit, offset
        )

    async def search(self, q: str, contact_id: Optional[str] = None) -> list[Message]:
        return await asyncio.to_thread(self.store.search_messages, q, contact_id)

    async def stats(self) -> dict:
        return await asyncio.to_thread(self.store.get_stats)

    @staticmethod
    def _placeholder(contact_id: str) -> Contact:
        return Contact(contact_id=contact_id, display_name=placeholder_name(contact_id))

    # -------------------------------------------------------------------------
    # Demo receipts
    # -------------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _simulate_receipts(self, message_id: str) -> None:
        """Stand-in for provider receipts: delivered, then read."""
        try:
            await asyncio.sleep(self._delivered_delay)
            await self.tracker.update_status(message_id, MessageStatus.DELIVERED)
            await asyncio.sleep(max(self._read_delay - self._delivered_delay, 0))
            await self.tracker.update_status(message_id, MessageStatus.READ)
        except NotFoundError:
            logger.info(f"Simulated receipt skipped, message {message_id} is gone")
