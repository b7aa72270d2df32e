"""Inbound event descriptors.

LINE webhook events are parsed into a closed set of kinds before they reach
the ingestion pipeline. Anything the CRM does not act on becomes
EventKind.UNHANDLED instead of an error.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from line_crm.schemas import LineWebhookBody, LineWebhookEvent

logger = logging.getLogger(__name__)


class MalformedBatchError(ValueError):
    """The webhook body as a whole could not be read as a LINE event batch."""


class EventKind(str, Enum):
    MESSAGE = "message"
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    UNHANDLED = "unhandled"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    STICKER = "sticker"
    LOCATION = "location"

    @property
    def has_content(self) -> bool:
        """Binary content lives on the LINE content API and is not stored yet."""
        return self in (MessageKind.IMAGE, MessageKind.FILE, MessageKind.AUDIO, MessageKind.VIDEO)


@dataclass(frozen=True)
class FileRef:
    name: Optional[str] = None
    path: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class StickerRef:
    package_id: str
    sticker_id: str


@dataclass(frozen=True)
class LocationRef:
    lat: float
    lng: float
    address: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class MessageDescriptor:
    external_id: str
    kind: MessageKind
    text: Optional[str] = None
    file_ref: Optional[FileRef] = None
    sticker_ref: Optional[StickerRef] = None
    location_ref: Optional[LocationRef] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InboundEvent:
    """One event of a webhook batch, independent of the LINE wire format."""

    kind: EventKind
    source_user_id: Optional[str]
    timestamp_ms: int
    message: Optional[MessageDescriptor] = None
    raw_type: Optional[str] = None
    reply_token: Optional[str] = None
    # set when the event itself is unreadable; the pipeline reports it as failed
    error: Optional[str] = None

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000, tz=timezone.utc)

    @property
    def label(self) -> str:
        return self.raw_type or self.kind.value


# =============================================================================
# Wire Parsing
# =============================================================================

def _parse_message(payload: dict[str, Any]) -> Optional[MessageDescriptor]:
    """Map a LINE message object; returns None for message types the CRM does not store."""
    try:
        kind = MessageKind(payload.get("type"))
    except ValueError:
        return None

    external_id = str(payload.get("id") or "")
    if not external_id:
        raise ValueError("message event without message id")

    if kind is MessageKind.TEXT:
        return MessageDescriptor(external_id, kind, text=payload.get("text"))

    if kind is MessageKind.STICKER:
        return MessageDescriptor(
            external_id,
            kind,
            sticker_ref=StickerRef(
                package_id=str(payload.get("packageId", "")),
                sticker_id=str(payload.get("stickerId", "")),
            ),
        )

    if kind is MessageKind.LOCATION:
        return MessageDescriptor(
            external_id,
            kind,
            location_ref=LocationRef(
                lat=float(payload["latitude"]),
                lng=float(payload["longitude"]),
                address=payload.get("address") or None,
                title=payload.get("title") or None,
            ),
        )

    extra = {}
    if payload.get("contentProvider"):
        extra["content_provider"] = payload["contentProvider"]
    if payload.get("duration") is not None:
        extra["duration_ms"] = payload["duration"]
    return MessageDescriptor(
        external_id,
        kind,
        file_ref=FileRef(
            name=payload.get("fileName"),
            size=payload.get("fileSize"),
        ),
        extra=extra,
    )


def to_inbound_event(event: LineWebhookEvent) -> InboundEvent:
    """Classify a single LINE webhook event."""
    user_id = event.source.user_id if event.source else None

    try:
        kind = EventKind(event.type)
    except ValueError:
        kind = EventKind.UNHANDLED

    message = None
    error = None
    if kind is EventKind.MESSAGE:
        try:
            message = _parse_message(event.message or {})
        except (KeyError, TypeError, ValueError) as e:
            error = f"invalid message payload: {e}"
        if message is None and error is None:
            # e.g. an "imagemap" or future message type
            kind = EventKind.UNHANDLED

    return InboundEvent(
        kind=kind,
        source_user_id=user_id,
        timestamp_ms=event.timestamp,
        message=message,
        raw_type=event.type,
        reply_token=event.reply_token,
        error=error,
    )


def _unreadable_event(raw: Any, error: ValidationError) -> InboundEvent:
    """Keep whatever can be read of an invalid event so it is reported as failed."""
    raw = raw if isinstance(raw, dict) else {}
    source = raw.get("source") if isinstance(raw.get("source"), dict) else {}
    raw_type = raw.get("type") if isinstance(raw.get("type"), str) else None
    timestamp = raw.get("timestamp")

    try:
        kind = EventKind(raw_type)
    except ValueError:
        kind = EventKind.UNHANDLED

    problems = "; ".join(
        f"{'.'.join(str(part) for part in item['loc']) or 'event'}: {item['msg']}"
        for item in error.errors()
    )
    return InboundEvent(
        kind=kind,
        source_user_id=source.get("userId") if isinstance(source.get("userId"), str) else None,
        timestamp_ms=timestamp if isinstance(timestamp, int) else 0,
        raw_type=raw_type,
        error=f"invalid event: {problems}",
    )


def parse_event(raw: Any) -> InboundEvent:
    """Validate and classify one raw event of a webhook body."""
    try:
        event = LineWebhookEvent.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Unreadable webhook event: {e.error_count()} validation errors")
        return _unreadable_event(raw, e)
    return to_inbound_event(event)


def parse_webhook_body(raw_body: bytes) -> list[InboundEvent]:
    """
    Parse a verified LINE webhook body into inbound events.

    Only the envelope can reject the call; invalid events come back with
    InboundEvent.error set.

    Raises:
        MalformedBatchError: body is not JSON or does not carry an events list
    """
    try:
        body = LineWebhookBody.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedBatchError(f"Invalid JSON: {e}") from e
    except ValidationError as e:
        raise MalformedBatchError(str(e)) from e

    events = [parse_event(event) for event in body.events]
    logger.debug(f"Parsed {len(events)} events for destination {body.destination}")
    return events
