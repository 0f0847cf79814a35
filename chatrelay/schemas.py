"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook payload models (provider delivery shape)
- Request models for the chat API
- Response models for API responses
- WebSocket frame envelopes
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from chatrelay.domain import Contact, Message, MessageStatus, Presence


# =============================================================================
# Webhook Payload Models
# =============================================================================

class WebhookProfile(BaseModel):
    name: Optional[str] = None


class WebhookContact(BaseModel):
    """Sender metadata delivered next to the messages."""
    wa_id: str = Field(..., min_length=1)
    profile: Optional[WebhookProfile] = None


class WebhookText(BaseModel):
    body: str = ""


class WebhookMedia(BaseModel):
    id: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None


class WebhookLocation(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class WebhookMessage(BaseModel):
    """
    One inbound message of a webhook delivery.

    - id: provider message id, becomes the canonical message id
    - from: sender id, identifies the contact thread
    - timestamp: unix seconds (string or number)
    - type: message kind; the matching payload field carries the content
    """
    id: str = Field(..., min_length=1, description="Provider message id")
    from_id: str = Field(..., alias="from", min_length=1, description="Sender id")
    timestamp: str = Field(..., description="Unix timestamp in seconds")
    type: str = Field(..., min_length=1, description="Message kind")
    meta_msg_id: Optional[str] = Field(None, description="Secondary id echoed by status updates")
    text: Optional[WebhookText] = None
    image: Optional[WebhookMedia] = None
    audio: Optional[WebhookMedia] = None
    video: Optional[WebhookMedia] = None
    document: Optional[WebhookMedia] = None
    sticker: Optional[WebhookMedia] = None
    location: Optional[WebhookLocation] = None

    model_config = {"populate_by_name": True, "coerce_numbers_to_str": True}


class WebhookStatus(BaseModel):
    """Delivery receipt; ``id`` may be the message id or its correlation id."""
    id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None

    model_config = {"coerce_numbers_to_str": True}


class WebhookValue(BaseModel):
    messaging_product: Optional[str] = None
    contacts: list[WebhookContact] = Field(default_factory=list)
    messages: list[WebhookMessage] = Field(default_factory=list)
    statuses: list[WebhookStatus] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: str
    value: WebhookValue


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookRequest(BaseModel):
    """
    Pydantic model for validating incoming webhook deliveries.

    Only changes with field == "messages" are processed; others are ignored.
    """
    object: Optional[str] = None
    entry: list[WebhookEntry] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "object": "whatsapp_business_account",
                    "entry": [{
                        "changes": [{
                            "field": "messages",
                            "value": {
                                "contacts": [{"wa_id": "919937320320", "profile": {"name": "Ravi"}}],
                                "messages": [{
                                    "id": "wamid.HBgM1",
                                    "from": "919937320320",
                                    "timestamp": "1754400000",
                                    "type": "text",
                                    "text": {"body": "Hi"},
                                }],
                            },
                        }],
                    }],
                }
            ]
        }
    }


# =============================================================================
# Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    contact_id: str = Field(..., min_length=1, description="Recipient thread")
    body: str = Field(..., min_length=1, max_length=4096, description="Message text")


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., description="Target status: sent, delivered, read or received")


class ContactUpdateRequest(BaseModel):
    """Profile fields; omitted fields are left unchanged."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=128)
    avatar_ref: Optional[str] = None


class PresenceUpdateRequest(BaseModel):
    presence: Presence


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    ingested: int = Field(0, ge=0, description="New messages stored")
    duplicates: int = Field(0, ge=0, description="Messages already stored")
    status_updates: int = Field(0, ge=0, description="Status changes applied")
    not_found: int = Field(0, ge=0, description="Status updates for unknown messages")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    """One row of the conversation list."""
    contact_id: str
    contact: Contact
    last_message: Message
    unread_count: int = Field(..., ge=0)
    message_count: int = Field(..., ge=0)
    ordering_key: datetime


class ThreadResponse(BaseModel):
    """
    One page of a thread, oldest first.

    Pass ``next_before`` and ``next_before_seq`` as ``before`` and
    ``before_seq`` to page back.
    """
    contact: Contact
    messages: list[Message] = Field(default_factory=list)
    has_more: bool
    total_messages: int = Field(..., ge=0)
    next_before: Optional[datetime] = Field(None, description="Cursor timestamp of the next older page")
    next_before_seq: Optional[int] = Field(None, description="Cursor sequence of the next older page")


class SendMessageResponse(BaseModel):
    success: bool = True
    message: Message


class StatusUpdateResponse(BaseModel):
    message: Message
    changed: bool
    old_status: MessageStatus


class MessageRemovedResponse(BaseModel):
    success: bool = True
    message_id: str
    contact_id: str


class MarkReadResponse(BaseModel):
    contact_id: str
    marked: int = Field(..., ge=0)
    message_ids: list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class ContactsListResponse(BaseModel):
    contacts: list[Contact] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int
    offset: int


class KeyCount(BaseModel):
    key: str
    count: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    total_messages: int = Field(..., ge=0)
    total_conversations: int = Field(..., ge=0)
    today_messages: int = Field(..., ge=0)
    messages_by_kind: list[KeyCount] = Field(default_factory=list)
    messages_by_status: list[KeyCount] = Field(default_factory=list)


class RebuildResponse(BaseModel):
    conversations: int = Field(..., ge=0)
    drifted: list[str] = Field(default_factory=list, description="Contacts whose live entry differed")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# WebSocket Frames
# =============================================================================

class WsInbound(BaseModel):
    """Client -> server frame."""

    type: Literal["subscribe", "unsubscribe", "watch_list", "send_message", "mark_read", "ping"]
    data: dict[str, Any] = Field(default_factory=dict)


class WsOutbound(BaseModel):
    """Server -> client frame for protocol replies (events use the same envelope)."""

    type: str  # connected, subscribed, unsubscribed, list_watch, message_sent, marked_read, pong, error
    data: dict[str, Any] = Field(default_factory=dict)
