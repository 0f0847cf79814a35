"""
Idempotent message ingestion.

Provider deliveries are at-least-once, so the same message id can arrive
any number of times; only the first arrival is stored and announced.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from chatrelay.domain import (
    Contact,
    Direction,
    EventSink,
    IngestedEvent,
    Message,
    MessageKind,
    MessageStatus,
    TextContent,
)
from chatrelay.errors import DuplicateMessageError, ValidationError
from chatrelay.locks import KeyedLock
from chatrelay.metrics import record_ingestion
from chatrelay.normalize import InboundMessage, SendRequest, summarize_content, validate_send
from chatrelay.storage import MessageStore
from chatrelay.utils import generate_message_id, placeholder_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    message: Message
    contact: Contact
    is_duplicate: bool


class Ingestor:
    """
    Validates, deduplicates and persists messages, then emits ``ingested``.

    The emit callback runs while the contact's lock is still held, after the
    store write, so downstream consumers observe events in store order.
    """

    def __init__(self, store: MessageStore, locks: KeyedLock, emit: EventSink):
        self._store = store
        self._locks = locks
        self._emit = emit

    async def ingest(self, event: Union[InboundMessage, SendRequest]) -> IngestResult:
        """
        Record a message exactly once.

        Raises:
            ValidationError: malformed event; nothing was written
            StorageError: store unavailable; the caller owns retries
        """
        message, contact_name = self._to_message(event)
        # Once admitted, the write runs to completion even if the caller goes away
        return await asyncio.shield(self._ingest(message, contact_name))

    def _to_message(
        self, event: Union[InboundMessage, SendRequest]
    ) -> tuple[Message, Optional[str]]:
        if isinstance(event, SendRequest):
            request = validate_send(event)
            content = TextContent(text=request.body)
            message = Message(
                id=generate_message_id(),
                contact_id=request.contact_id,
                direction=Direction.OUTBOUND,
                kind=MessageKind.TEXT,
                content=content,
                body=summarize_content(content),
                timestamp=datetime.now(timezone.utc),
                status=MessageStatus.SENT,
                correlation_id=request.correlation_id,
            )
            return message, None

        if isinstance(event, InboundMessage):
            missing = [
                name for name in ("id", "contact_id")
                if not getattr(event, name).strip()
            ]
            if missing:
                raise ValidationError(
                    f"Inbound message is missing {', '.join(missing)}",
                    details={"missing": missing},
                )
            message = Message(
                id=event.id,
                contact_id=event.contact_id,
                direction=Direction.INBOUND,
                kind=event.kind,
                content=event.content,
                body=summarize_content(event.content),
                timestamp=event.timestamp,
                status=MessageStatus.RECEIVED,
                correlation_id=event.correlation_id,
            )
            return message, event.contact_name

        raise ValidationError(f"Unsupported event type: {type(event).__name__}")

    async def _ingest(self, message: Message, contact_name: Optional[str]) -> IngestResult:
        async with self._locks.hold(message.contact_id):
            existing = await asyncio.to_thread(self._store.get_message_by_id, message.id)
            if existing is not None:
                return await self._duplicate(existing)

            contact = await self._resolve_contact(message.contact_id, contact_name)
            try:
                stored = await asyncio.to_thread(self._store.put_message, message)
            except DuplicateMessageError:
                # Same id raced in through another contact's lock
                existing = await asyncio.to_thread(self._store.get_message_by_id, message.id)
                if existing is None:
                    raise
                return await self._duplicate(existing)

            logger.info(
                f"Message ingested: id={stored.id}, contact={stored.contact_id}, "
                f"direction={stored.direction.value}, kind={stored.kind.value}"
            )
            record_ingestion(stored.direction.value, duplicate=False)
            await self._emit(IngestedEvent(
                contact_id=stored.contact_id,
                message=stored,
                contact=contact,
            ))
            return IngestResult(message=stored, contact=contact, is_duplicate=False)

    async def _duplicate(self, existing: Message) -> IngestResult:
        logger.info(f"Duplicate message ignored: {existing.id}")
        record_ingestion(existing.direction.value, duplicate=True)
        contact = await asyncio.to_thread(self._store.get_contact, existing.contact_id)
        if contact is None:
            contact = Contact(
                contact_id=existing.contact_id,
                display_name=placeholder_name(existing.contact_id),
            )
        return IngestResult(message=existing, contact=contact, is_duplicate=True)

    async def _resolve_contact(self, contact_id: str, contact_name: Optional[str]) -> Contact:
        contact = await asyncio.to_thread(self._store.get_contact, contact_id)
        if contact is not None:
            return contact
        contact = Contact(
            contact_id=contact_id,
            display_name=(contact_name or "").strip() or placeholder_name(contact_id),
        )
        logger.info(f"Creating contact: {contact_id} ({contact.display_name})")
        return await asyncio.to_thread(self._store.upsert_contact, contact)
