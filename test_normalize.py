"""
Tests for normalization of webhook deliveries and send requests.

Tests cover:
- Body summaries for every content form
- Kind, status and timestamp parsing
- Webhook flattening (profile names, correlation ids, ignored changes)
- Whole-delivery rejection on a malformed item
"""

from datetime import datetime, timezone

import pytest

from chatrelay.domain import LocationContent, MediaContent, MessageKind, MessageStatus, TextContent
from chatrelay.errors import ValidationError
from chatrelay.normalize import (
    SendRequest,
    normalize_webhook,
    parse_kind,
    parse_status,
    parse_unix_timestamp,
    summarize_content,
    validate_send,
)
from chatrelay.schemas import WebhookRequest


def delivery(messages=None, statuses=None, contacts=None, field="messages") -> WebhookRequest:
    return WebhookRequest.model_validate({
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "acct",
            "changes": [{
                "field": field,
                "value": {
                    "contacts": contacts or [],
                    "messages": messages or [],
                    "statuses": statuses or [],
                },
            }],
        }],
    })


class TestSummarizeContent:
    """Body descriptors for each content form."""

    def test_text(self):
        assert summarize_content(TextContent(text="hi")) == "hi"

    @pytest.mark.parametrize("kind,fields,expected", [
        (MessageKind.IMAGE, {"caption": "Sunset"}, "Image: Sunset"),
        (MessageKind.IMAGE, {}, "Image: No caption"),
        (MessageKind.VIDEO, {"caption": "Clip"}, "Video: Clip"),
        (MessageKind.VIDEO, {}, "Video: No caption"),
        (MessageKind.DOCUMENT, {"filename": "invoice.pdf"}, "Document: invoice.pdf"),
        (MessageKind.DOCUMENT, {}, "Document: Unknown file"),
        (MessageKind.AUDIO, {}, "Audio message"),
        (MessageKind.STICKER, {}, "Sticker"),
    ])
    def test_media(self, kind, fields, expected):
        assert summarize_content(MediaContent(kind=kind, **fields)) == expected

    def test_location(self):
        assert summarize_content(LocationContent(latitude=1.0, longitude=2.0)) == "Location shared"
        assert summarize_content(LocationContent(name="Office")) == "Location: Office"


class TestParsing:
    """Scalar parsers raise ValidationError on bad input."""

    def test_parse_kind(self):
        assert parse_kind("sticker") == MessageKind.STICKER
        with pytest.raises(ValidationError):
            parse_kind("reaction")

    def test_parse_status(self):
        assert parse_status("delivered") == MessageStatus.DELIVERED
        assert parse_status(MessageStatus.READ) == MessageStatus.READ
        with pytest.raises(ValidationError):
            parse_status("failed")

    def test_parse_unix_timestamp(self):
        assert parse_unix_timestamp("100") == datetime(1970, 1, 1, 0, 1, 40, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            parse_unix_timestamp("yesterday")


class TestNormalizeWebhook:
    """Flattening provider deliveries."""

    def test_text_message_with_profile(self):
        batch = normalize_webhook(delivery(
            contacts=[{"wa_id": "15550001111", "profile": {"name": "Ravi"}}],
            messages=[{
                "id": "wamid.1",
                "from": "15550001111",
                "timestamp": "1754400000",
                "type": "text",
                "text": {"body": "Hi there"},
            }],
        ))

        assert len(batch.messages) == 1
        message = batch.messages[0]
        assert message.id == "wamid.1"
        assert message.contact_id == "15550001111"
        assert message.kind == MessageKind.TEXT
        assert message.content == TextContent(text="Hi there")
        assert message.contact_name == "Ravi"
        assert message.timestamp.tzinfo is not None

    def test_numeric_timestamp_is_accepted(self):
        batch = normalize_webhook(delivery(messages=[{
            "id": "wamid.2", "from": "c1", "timestamp": 100, "type": "text", "text": {"body": "x"},
        }]))
        assert batch.messages[0].timestamp == datetime(1970, 1, 1, 0, 1, 40, tzinfo=timezone.utc)

    def test_media_message(self):
        batch = normalize_webhook(delivery(messages=[{
            "id": "wamid.3",
            "from": "c1",
            "timestamp": "100",
            "type": "document",
            "document": {"id": "media-9", "filename": "report.pdf", "mime_type": "application/pdf"},
        }]))

        content = batch.messages[0].content
        assert isinstance(content, MediaContent)
        assert content.filename == "report.pdf"
        assert content.media_id == "media-9"

    def test_correlation_id_from_meta_msg_id(self):
        batch = normalize_webhook(delivery(messages=[{
            "id": "wamid.4", "from": "c1", "timestamp": "100", "type": "text",
            "text": {"body": "x"}, "meta_msg_id": "corr-1",
        }]))
        assert batch.messages[0].correlation_id == "corr-1"

    def test_statuses(self):
        batch = normalize_webhook(delivery(statuses=[
            {"id": "msg_1", "status": "delivered", "timestamp": "101"},
            {"id": "msg_1", "status": "read"},
        ]))
        assert [(s.ref, s.status) for s in batch.statuses] == [
            ("msg_1", MessageStatus.DELIVERED),
            ("msg_1", MessageStatus.READ),
        ]

    def test_non_message_changes_are_ignored(self):
        batch = normalize_webhook(delivery(
            field="account_update",
            messages=[{"id": "x", "from": "c1", "timestamp": "1", "type": "text"}],
        ))
        assert batch.messages == []

    def test_unknown_kind_rejects_whole_delivery(self):
        with pytest.raises(ValidationError):
            normalize_webhook(delivery(messages=[
                {"id": "ok", "from": "c1", "timestamp": "100", "type": "text", "text": {"body": "x"}},
                {"id": "bad", "from": "c1", "timestamp": "100", "type": "reaction"},
            ]))

    def test_unknown_status_rejects_whole_delivery(self):
        with pytest.raises(ValidationError):
            normalize_webhook(delivery(statuses=[{"id": "m1", "status": "failed"}]))

    @pytest.mark.parametrize("field", ["id", "from"])
    def test_blank_identifier_rejects_whole_delivery(self, field):
        blank = {"id": "m2", "from": "c1", "timestamp": "100", "type": "text"} | {field: "   "}
        with pytest.raises(ValidationError) as exc_info:
            normalize_webhook(delivery(messages=[
                {"id": "ok", "from": "c1", "timestamp": "100", "type": "text", "text": {"body": "x"}},
                blank,
            ]))
        assert exc_info.value.details["missing"] == ["id" if field == "id" else "contact_id"]

    def test_blank_status_ref_rejects_whole_delivery(self):
        with pytest.raises(ValidationError):
            normalize_webhook(delivery(statuses=[{"id": " ", "status": "read"}]))


class TestValidateSend:
    """Local send requests."""

    def test_strips_input(self):
        request = validate_send(SendRequest(contact_id=" c1 ", body="  hello  "))
        assert request.contact_id == "c1"
        assert request.body == "hello"

    @pytest.mark.parametrize("contact_id,body", [("c1", "   "), ("", "hello")])
    def test_rejects_empty(self, contact_id, body):
        with pytest.raises(ValidationError):
            validate_send(SendRequest(contact_id=contact_id, body=body))
