"""
Core domain types shared by the store adapter, the chat core and the API.

Messages, contacts and conversation entries are immutable pydantic models;
state changes produce new instances via ``model_copy``. Events are the
units pushed through the fanout hub and share one wire envelope:
``{"type": ..., "data": {...}}``.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enumerations
# =============================================================================

class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"


MEDIA_KINDS = frozenset({
    MessageKind.IMAGE,
    MessageKind.AUDIO,
    MessageKind.VIDEO,
    MessageKind.DOCUMENT,
    MessageKind.STICKER,
})


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    RECEIVED = "received"


class Presence(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


# =============================================================================
# Message content (closed set of payload forms)
# =============================================================================

class TextContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    form: Literal["text"] = "text"
    text: str


class MediaContent(BaseModel):
    """Descriptor for image, audio, video, document and sticker messages."""
    model_config = ConfigDict(frozen=True)

    form: Literal["media"] = "media"
    kind: MessageKind
    caption: Optional[str] = None
    filename: Optional[str] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None


class LocationContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    form: Literal["location"] = "location"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


Content = Annotated[
    Union[TextContent, MediaContent, LocationContent],
    Field(discriminator="form"),
]


# =============================================================================
# Entities
# =============================================================================

class Contact(BaseModel):
    model_config = ConfigDict(frozen=True)

    contact_id: str
    display_name: str
    avatar_ref: Optional[str] = None
    last_seen: Optional[datetime] = None
    presence: Presence = Presence.OFFLINE


class Message(BaseModel):
    """
    One entry of a contact's message log.

    ``seq`` is assigned by the store on insert and breaks timestamp ties
    in insertion order. ``body`` is the text, or a short descriptor for
    non-text kinds.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    contact_id: str
    direction: Direction
    kind: MessageKind
    content: Content
    body: str
    timestamp: datetime
    status: MessageStatus
    correlation_id: Optional[str] = None
    seq: Optional[int] = None

    @property
    def is_unread(self) -> bool:
        return self.direction == Direction.INBOUND and self.status != MessageStatus.READ

    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.seq or 0)


class ConversationEntry(BaseModel):
    """Derived per-contact summary; always recomputable from the message log."""
    model_config = ConfigDict(frozen=True)

    contact_id: str
    last_message: Message
    unread_count: int = 0
    message_count: int = 0

    @property
    def ordering_key(self) -> datetime:
        return self.last_message.timestamp


# =============================================================================
# Events
# =============================================================================

class _Event(BaseModel):
    """Every event is routed by the thread (contact) it belongs to."""
    model_config = ConfigDict(frozen=True)

    type: str
    contact_id: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": self.model_dump(mode="json", exclude={"type"}),
        }


class IngestedEvent(_Event):
    type: Literal["ingested"] = "ingested"
    message: Message
    contact: Contact


class StatusChangedEvent(_Event):
    type: Literal["status_changed"] = "status_changed"
    message_id: str
    direction: Direction
    old_status: MessageStatus
    new_status: MessageStatus


class ThreadReadEvent(_Event):
    """One aggregated event for a bulk mark-read of a thread."""
    type: Literal["thread_read"] = "thread_read"
    message_ids: list[str]


class MessageRemovedEvent(_Event):
    type: Literal["message_removed"] = "message_removed"
    message_id: str


class ConversationUpdatedEvent(_Event):
    """``entry`` is None when the thread no longer has any messages."""
    type: Literal["conversation_updated"] = "conversation_updated"
    entry: Optional[ConversationEntry] = None


class PresenceChangedEvent(_Event):
    type: Literal["presence_changed"] = "presence_changed"
    contact: Contact


class ContactUpdatedEvent(_Event):
    type: Literal["contact_updated"] = "contact_updated"
    contact: Contact


Event = Union[
    IngestedEvent,
    StatusChangedEvent,
    ThreadReadEvent,
    MessageRemovedEvent,
    ConversationUpdatedEvent,
    PresenceChangedEvent,
    ContactUpdatedEvent,
]

# Consumers of core events (aggregate + fanout) are awaited under the contact lock
EventSink = Callable[[Event], Awaitable[None]]
