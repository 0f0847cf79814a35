"""
Normalization of inbound events into canonical shapes.

Webhook deliveries and local send requests both end up as ``InboundMessage``
/ ``SendRequest`` values that the Ingestor turns into a Message; provider
receipts become ``StatusUpdate`` values for the StatusTracker. Everything is
validated here, before any write happens, so a malformed delivery is
rejected as a whole.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from chatrelay.domain import (
    MEDIA_KINDS,
    Content,
    LocationContent,
    MediaContent,
    MessageKind,
    MessageStatus,
    TextContent,
)
from chatrelay.errors import ValidationError
from chatrelay.schemas import WebhookContact, WebhookMessage, WebhookRequest

logger = logging.getLogger(__name__)

MessageContent = Union[TextContent, MediaContent, LocationContent]


class InboundMessage(BaseModel):
    """A provider message in canonical form, not yet persisted."""
    model_config = ConfigDict(frozen=True)

    id: str
    contact_id: str
    kind: MessageKind
    content: Content
    timestamp: datetime
    correlation_id: Optional[str] = None
    contact_name: Optional[str] = None


class SendRequest(BaseModel):
    """A locally-originated text message."""
    model_config = ConfigDict(frozen=True)

    contact_id: str
    body: str
    correlation_id: Optional[str] = None


class StatusUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref: str
    status: MessageStatus


class WebhookBatch(BaseModel):
    """Everything a single webhook delivery asks the core to do, in order."""
    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[StatusUpdate] = Field(default_factory=list)


# =============================================================================
# Content
# =============================================================================

def summarize_content(content: MessageContent) -> str:
    """Short textual descriptor stored as the message body."""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, MediaContent):
        if content.kind == MessageKind.IMAGE:
            return f"Image: {content.caption or 'No caption'}"
        if content.kind == MessageKind.VIDEO:
            return f"Video: {content.caption or 'No caption'}"
        if content.kind == MessageKind.DOCUMENT:
            return f"Document: {content.filename or 'Unknown file'}"
        if content.kind == MessageKind.AUDIO:
            return "Audio message"
        if content.kind == MessageKind.STICKER:
            return "Sticker"
        raise ValueError(f"Not a media kind: {content.kind}")
    if isinstance(content, LocationContent):
        return f"Location: {content.name}" if content.name else "Location shared"
    raise TypeError(f"Unsupported content form: {type(content).__name__}")


def parse_kind(value: str) -> MessageKind:
    try:
        return MessageKind(value)
    except ValueError:
        raise ValidationError(
            f"Unsupported message kind: {value}",
            details={"kind": value},
        ) from None


def parse_status(value: Union[str, MessageStatus]) -> MessageStatus:
    try:
        return MessageStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unsupported message status: {value}",
            details={"status": value},
        ) from None


def parse_unix_timestamp(value: str) -> datetime:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid timestamp: {value}",
            details={"timestamp": value},
        ) from None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _content_of(message: WebhookMessage, kind: MessageKind) -> MessageContent:
    if kind == MessageKind.TEXT:
        return TextContent(text=message.text.body if message.text else "")
    if kind == MessageKind.LOCATION:
        loc = message.location
        if loc is None:
            return LocationContent()
        return LocationContent(
            latitude=loc.latitude,
            longitude=loc.longitude,
            name=loc.name,
            address=loc.address,
        )
    if kind in MEDIA_KINDS:
        media = getattr(message, kind.value)
        if media is None:
            return MediaContent(kind=kind)
        return MediaContent(
            kind=kind,
            caption=media.caption,
            filename=media.filename,
            media_id=media.id,
            mime_type=media.mime_type,
        )
    raise ValueError(f"Unhandled message kind: {kind}")


def _profile_name(contacts: list[WebhookContact], sender: str) -> Optional[str]:
    for contact in contacts:
        if contact.wa_id == sender:
            return contact.profile.name if contact.profile else None
    # Single-contact deliveries describe the sender even when ids are formatted differently
    if len(contacts) == 1 and contacts[0].profile:
        return contacts[0].profile.name
    return None


# =============================================================================
# Entry Points
# =============================================================================

def normalize_webhook_message(
    message: WebhookMessage, contacts: Optional[list[WebhookContact]] = None
) -> InboundMessage:
    """
    Raises:
        ValidationError: blank id or sender, unknown kind or bad timestamp
    """
    missing = [
        name for name, value in (("id", message.id), ("contact_id", message.from_id))
        if not value.strip()
    ]
    if missing:
        raise ValidationError(
            f"Inbound message is missing {', '.join(missing)}",
            details={"missing": missing},
        )
    kind = parse_kind(message.type)
    return InboundMessage(
        id=message.id,
        contact_id=message.from_id,
        kind=kind,
        content=_content_of(message, kind),
        timestamp=parse_unix_timestamp(message.timestamp),
        correlation_id=message.meta_msg_id,
        contact_name=_profile_name(contacts or [], message.from_id),
    )


def normalize_webhook(payload: WebhookRequest) -> WebhookBatch:
    """
    Flatten a webhook delivery into canonical messages and status updates.

    Raises:
        ValidationError: any message or status in the delivery is malformed
    """
    batch = WebhookBatch()
    for entry in payload.entry:
        for change in entry.changes:
            if change.field != "messages":
                logger.debug(f"Ignoring webhook change field: {change.field}")
                continue
            value = change.value
            for message in value.messages:
                batch.messages.append(normalize_webhook_message(message, value.contacts))
            for status in value.statuses:
                if not status.id.strip():
                    raise ValidationError("Status update is missing id", details={"missing": ["id"]})
                batch.statuses.append(
                    StatusUpdate(ref=status.id, status=parse_status(status.status))
                )
    logger.debug(
        f"Normalized webhook: {len(batch.messages)} messages, {len(batch.statuses)} statuses"
    )
    return batch


def validate_send(request: SendRequest) -> SendRequest:
    contact_id = request.contact_id.strip()
    body = request.body.strip()
    if not contact_id:
        raise ValidationError("contact_id is required", details={"field": "contact_id"})
    if not body:
        raise ValidationError("Message body cannot be empty", details={"field": "body"})
    return request.model_copy(update={"contact_id": contact_id, "body": body})
