"""
Tests for the POST /webhook endpoint.

Tests cover:
- Valid signature with user and message creation
- Duplicate delivery handling (idempotency)
- Per-event outcome counts, including partial failures
- Invalid/missing signature (401)
- Malformed bodies (422)
"""

import hashlib
import hmac
import json
import os

import pytest

from line_crm.models import Message, User
from line_crm.storage import SessionLocal
from line_crm.utils import compute_line_signature, verify_line_signature


# Test configuration from environment
TEST_CHANNEL_SECRET = os.environ["LINE_CHANNEL_SECRET"]


def make_body(*events) -> str:
    return json.dumps({"destination": "Ubot", "events": list(events)})


def message_event(user_id: str, message_id: str, text: str = "Hello", ts: int = 1736935200000) -> dict:
    return {
        "type": "message",
        "timestamp": ts,
        "source": {"type": "user", "userId": user_id},
        "replyToken": f"reply-{message_id}",
        "message": {"type": "text", "id": message_id, "text": text},
    }


def post_webhook(client, body: str, secret: str = TEST_CHANNEL_SECRET, signature: str = None):
    if signature is None:
        signature = compute_line_signature(body.encode("utf-8"), secret)
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Line-Signature": signature,
        },
    )


@pytest.fixture
def valid_body() -> str:
    return make_body(message_event("U1", "m1"))


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_message_creates_user_and_message(self, client, valid_body):
        """A first message creates the user and stores the message."""
        response = post_webhook(client, valid_body)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "processed": 1,
            "results": {"applied": 1, "duplicate": 0, "skipped": 0, "failed": 0},
        }

        with SessionLocal() as db:
            user = db.query(User).filter(User.line_user_id == "U1").one()
            assert user.message_count == 1
            assert user.unread_count == 1
            message = db.query(Message).filter(Message.line_message_id == "m1").one()
            assert message.user_id == user.id
            assert message.text_content == "Hello"

    def test_duplicate_delivery_is_idempotent(self, client, valid_body):
        """Re-delivered events return 200 and are counted as duplicates."""
        first = post_webhook(client, valid_body)
        second = post_webhook(client, valid_body)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["results"]["duplicate"] == 1

        with SessionLocal() as db:
            assert db.query(Message).count() == 1
            assert db.query(User).one().message_count == 1

    def test_mixed_batch(self, client):
        """Every event kind is counted under its outcome."""
        body = make_body(
            message_event("U1", "m1"),
            {"type": "follow", "timestamp": 1736935200000, "source": {"type": "user", "userId": "U2"}},
            {"type": "postback", "timestamp": 1736935200000, "source": {"type": "user", "userId": "U1"}},
            {"type": "message", "timestamp": 1736935200000,
             "source": {"type": "user", "userId": "U3"}, "message": {"type": "text"}},
        )

        response = post_webhook(client, body)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "processed": 4,
            "results": {"applied": 2, "duplicate": 0, "skipped": 1, "failed": 1},
        }

    def test_unfollow_deactivates_user(self, client):
        post_webhook(client, make_body(message_event("U1", "m1")))
        body = make_body({"type": "unfollow", "timestamp": 1736935300000,
                          "source": {"type": "user", "userId": "U1"}})

        response = post_webhook(client, body)

        assert response.status_code == 200
        with SessionLocal() as db:
            user = db.query(User).one()
            assert user.is_active is False
            assert user.message_count == 1

    def test_several_messages_from_one_user(self, client):
        """All messages of one batch land on the same user."""
        body = make_body(*(message_event("U1", f"m{i}", ts=1736935200000 + i) for i in range(4)))

        response = post_webhook(client, body)

        assert response.json()["results"]["applied"] == 4
        with SessionLocal() as db:
            assert db.query(User).count() == 1
            assert db.query(User).one().message_count == 4

    def test_empty_events(self, client):
        """LINE's webhook URL verification sends an empty batch."""
        response = post_webhook(client, make_body())

        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_request_id_header(self, client, valid_body):
        response = post_webhook(client, valid_body)
        assert response.headers.get("X-Request-ID")


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_missing_signature_header(self, client, valid_body):
        response = client.post("/webhook", content=valid_body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_empty_signature(self, client, valid_body):
        response = post_webhook(client, valid_body, signature="")

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_signature_with_different_body(self, client, valid_body):
        """A signature for one body does not validate another."""
        signature = compute_line_signature(valid_body.encode("utf-8"), TEST_CHANNEL_SECRET)

        response = post_webhook(client, make_body(message_event("U1", "m2")), signature=signature)

        assert response.status_code == 401

    def test_signature_with_different_secret(self, client, valid_body):
        response = post_webhook(client, valid_body, secret="wrong_secret")

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_hex_signature_is_rejected(self, client, valid_body):
        """LINE signs with base64, a hex digest of the same HMAC is not accepted."""
        hex_signature = hmac.new(
            TEST_CHANNEL_SECRET.encode("utf-8"), valid_body.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        response = post_webhook(client, valid_body, signature=hex_signature)

        assert response.status_code == 401

    def test_nothing_is_written(self, client, valid_body):
        post_webhook(client, valid_body, secret="wrong_secret")

        with SessionLocal() as db:
            assert db.query(User).count() == 0
            assert db.query(Message).count() == 0


class TestWebhookValidationErrors:
    """Test webhook validation errors (422)."""

    @pytest.mark.parametrize("body", [
        "not valid json",
        '{"destination": "Ubot"}',
        '{"events": {"type": "message"}}',
        "[]",
    ])
    def test_malformed_body(self, client, body):
        response = post_webhook(client, body)

        assert response.status_code == 422

    def test_signature_checked_before_body(self, client):
        """A malformed body with a bad signature is a 401, not a 422."""
        response = post_webhook(client, "not valid json", secret="wrong_secret")

        assert response.status_code == 401


class TestWebhookPartialFailure:
    """An unreadable event fails alone, the rest of the batch is applied."""

    def test_non_object_message(self, client):
        bad = {"type": "message", "timestamp": 1736935200000,
               "source": {"type": "user", "userId": "U2"}, "message": "oops"}

        response = post_webhook(client, make_body(message_event("U1", "m1"), bad))

        assert response.status_code == 200
        assert response.json()["results"] == {"applied": 1, "duplicate": 0, "skipped": 0, "failed": 1}
        with SessionLocal() as db:
            assert db.query(Message).count() == 1
            assert db.query(User).count() == 1

    def test_event_without_timestamp(self, client):
        bad = {"type": "unfollow", "source": {"type": "user", "userId": "U1"}}

        response = post_webhook(client, make_body(message_event("U1", "m1"), bad))

        assert response.status_code == 200
        assert response.json()["results"] == {"applied": 1, "duplicate": 0, "skipped": 0, "failed": 1}
        with SessionLocal() as db:
            user = db.query(User).one()
            assert user.is_active is True
            assert user.message_count == 1

    def test_event_that_is_not_an_object(self, client):
        response = post_webhook(client, make_body("garbage", message_event("U1", "m1")))

        assert response.status_code == 200
        assert response.json()["processed"] == 2
        assert response.json()["results"]["failed"] == 1
        assert response.json()["results"]["applied"] == 1


class TestSignatureHelpers:
    """Tests for the signature helpers."""

    def test_roundtrip(self):
        body = b'{"events":[]}'
        signature = compute_line_signature(body, "secret")
        assert verify_line_signature(body, signature, "secret") is True

    def test_signature_is_base64(self):
        signature = compute_line_signature(b'{"events":[]}', "secret")
        assert len(signature) == 44
        assert signature.endswith("=")

    def test_missing_secret(self):
        assert verify_line_signature(b"{}", "abc", "") is False
