"""
Tests for parsing LINE webhook bodies into inbound events.

Tests cover:
- Event kind classification (message, follow, unfollow, unhandled)
- Message payload parsing per message type
- Per-event parse errors vs whole-body errors
"""

import json
from datetime import datetime, timezone

import pytest

from line_crm.events import (
    EventKind,
    MalformedBatchError,
    MessageKind,
    parse_webhook_body,
)


def body(*events, destination="Udest") -> bytes:
    return json.dumps({"destination": destination, "events": list(events)}).encode("utf-8")


def line_event(event_type: str, user_id="U1", **extra) -> dict:
    event = {
        "type": event_type,
        "timestamp": 1736935200000,
        "source": {"type": "user", "userId": user_id},
        "replyToken": "reply-token",
        "webhookEventId": "01HXYZ",
        "mode": "active",
    }
    event.update(extra)
    return event


class TestEventClassification:
    """Tests for mapping LINE event types to event kinds."""

    def test_text_message(self):
        events = parse_webhook_body(body(line_event("message", message={"type": "text", "id": "m1", "text": "Hi"})))

        assert len(events) == 1
        event = events[0]
        assert event.kind is EventKind.MESSAGE
        assert event.source_user_id == "U1"
        assert event.reply_token == "reply-token"
        assert event.message.external_id == "m1"
        assert event.message.kind is MessageKind.TEXT
        assert event.message.text == "Hi"
        assert event.occurred_at == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_follow_and_unfollow(self):
        events = parse_webhook_body(body(line_event("follow"), line_event("unfollow")))

        assert [e.kind for e in events] == [EventKind.FOLLOW, EventKind.UNFOLLOW]
        assert all(e.message is None for e in events)

    def test_other_event_types_are_unhandled(self):
        """postback, join, beacon and friends are classified, not rejected."""
        events = parse_webhook_body(body(line_event("postback"), line_event("join")))

        assert [e.kind for e in events] == [EventKind.UNHANDLED, EventKind.UNHANDLED]
        assert [e.label for e in events] == ["postback", "join"]
        assert all(e.error is None for e in events)

    def test_unknown_message_type_is_unhandled(self):
        events = parse_webhook_body(body(line_event("message", message={"type": "imagemap", "id": "m1"})))

        assert events[0].kind is EventKind.UNHANDLED
        assert events[0].label == "message"

    def test_group_source_without_user_id(self):
        event = line_event("message", message={"type": "text", "id": "m1", "text": "x"})
        event["source"] = {"type": "group", "groupId": "G1"}

        events = parse_webhook_body(body(event))

        assert events[0].source_user_id is None


class TestMessageParsing:
    """Tests for per-type message payloads."""

    def test_sticker(self):
        message = {"type": "sticker", "id": "s1", "packageId": "446", "stickerId": 1988}

        event = parse_webhook_body(body(line_event("message", message=message)))[0]

        assert event.message.kind is MessageKind.STICKER
        assert event.message.sticker_ref.package_id == "446"
        assert event.message.sticker_ref.sticker_id == "1988"

    def test_location(self):
        message = {
            "type": "location", "id": "l1", "title": "Office",
            "address": "Bangkok", "latitude": 13.75, "longitude": "100.5",
        }

        event = parse_webhook_body(body(line_event("message", message=message)))[0]

        location = event.message.location_ref
        assert (location.lat, location.lng) == (13.75, 100.5)
        assert location.address == "Bangkok"
        assert location.title == "Office"

    def test_file(self):
        message = {"type": "file", "id": "f1", "fileName": "quote.pdf", "fileSize": 2048}

        event = parse_webhook_body(body(line_event("message", message=message)))[0]

        assert event.message.kind is MessageKind.FILE
        assert event.message.file_ref.name == "quote.pdf"
        assert event.message.file_ref.size == 2048

    def test_audio_keeps_duration(self):
        message = {"type": "audio", "id": "a1", "duration": 60000, "contentProvider": {"type": "line"}}

        event = parse_webhook_body(body(line_event("message", message=message)))[0]

        assert event.message.kind.has_content
        assert event.message.extra == {"content_provider": {"type": "line"}, "duration_ms": 60000}

    def test_numeric_message_id_becomes_string(self):
        event = parse_webhook_body(body(line_event("message", message={"type": "text", "id": 42, "text": "x"})))[0]

        assert event.message.external_id == "42"


class TestParseErrors:
    """Tests for malformed input."""

    def test_message_without_id_fails_only_that_event(self):
        """A broken event is marked, the rest of the batch still parses."""
        events = parse_webhook_body(body(
            line_event("message", message={"type": "text", "text": "no id"}),
            line_event("follow"),
        ))

        assert events[0].kind is EventKind.MESSAGE
        assert events[0].error.startswith("invalid message payload")
        assert events[1].error is None

    def test_location_without_coordinates(self):
        events = parse_webhook_body(body(line_event("message", message={"type": "location", "id": "l1"})))

        assert events[0].error is not None

    def test_invalid_event_keeps_its_siblings(self):
        """Schema errors inside one event are reported on that event only."""
        bad = line_event("message", message="oops")

        events = parse_webhook_body(body(bad, line_event("follow", user_id="U2")))

        assert events[0].kind is EventKind.MESSAGE
        assert events[0].source_user_id == "U1"
        assert events[0].error.startswith("invalid event: message")
        assert events[1].kind is EventKind.FOLLOW
        assert events[1].error is None

    def test_event_without_timestamp(self):
        bad = line_event("unfollow")
        del bad["timestamp"]

        event = parse_webhook_body(body(bad))[0]

        assert event.kind is EventKind.UNFOLLOW
        assert event.timestamp_ms == 0
        assert "timestamp" in event.error

    @pytest.mark.parametrize("raw_event", ["garbage", 42, None, {"type": "message"}, {}])
    def test_unreadable_event_shapes(self, raw_event):
        events = parse_webhook_body(body(raw_event, line_event("follow")))

        assert len(events) == 2
        assert events[0].error is not None
        assert events[1].error is None

    @pytest.mark.parametrize("raw", [
        b"not json",
        b"\xff\xfe",
        b'{"destination": "U"}',
        b'{"events": "nope"}',
        b'[]',
    ])
    def test_malformed_body(self, raw):
        with pytest.raises(MalformedBatchError):
            parse_webhook_body(raw)

    def test_empty_events_list_is_valid(self):
        """LINE sends an empty batch when the webhook URL is verified."""
        assert parse_webhook_body(body()) == []
