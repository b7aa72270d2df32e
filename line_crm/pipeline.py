"""
Webhook ingestion pipeline.

Applies a batch of inbound LINE events to the users and messages tables:
- message: create the user on first contact or bump its counters, store the message
- follow: create or reactivate the user
- unfollow: deactivate a known user
- anything else: skipped

Events of one batch run concurrently. Failures are caught per event and
reported in the BatchResult; ingest() itself only raises on cancellation.
Profile enrichment runs in detached tasks whose errors are logged and counted
but never reach the batch result.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Optional, Sequence, TypeVar

from line_crm.events import (
    EventKind,
    FileRef,
    InboundEvent,
    LocationRef,
    MessageDescriptor,
    MessageKind,
    StickerRef,
)
from line_crm.metrics import record_enrichment, record_event_outcome
from line_crm.ports import (
    MessagingPort,
    PersistencePort,
    ProfileNotFoundError,
    UniqueViolationError,
)
from line_crm.schema_registry import bucket_folder
from line_crm.schemas import UserRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


class UserNotFoundError(LookupError):
    def __init__(self, user_id: int):
        super().__init__(f"user {user_id} not found")
        self.user_id = user_id


@dataclass(frozen=True)
class EventResult:
    index: int
    kind: str
    outcome: Outcome
    reason: Optional[str] = None


@dataclass
class BatchResult:
    """Per-event outcomes of one ingest() call, in input order."""

    results: list[EventResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    def counts(self) -> dict[str, int]:
        return {outcome.value: self.count(outcome) for outcome in Outcome}

    @property
    def failures(self) -> list[EventResult]:
        return [result for result in self.results if result.outcome is Outcome.FAILED]


# =============================================================================
# Message Payload Mapping
# =============================================================================

def render_sticker_text(sticker: StickerRef) -> str:
    return f"[sticker] package={sticker.package_id} sticker={sticker.sticker_id}"


def render_location_text(location: LocationRef) -> str:
    coordinates = f"({location.lat}, {location.lng})"
    if location.address:
        return f"[location] {location.address} {coordinates}"
    return f"[location] {coordinates}"


def build_message_fields(
    message: MessageDescriptor, user_id: int, occurred_at: datetime
) -> dict[str, Any]:
    """
    Map a message descriptor onto messages table columns.

    Attachments only get placeholder file metadata; the binary content stays on
    the LINE content API and processed remains False until it is downloaded.
    """
    fields: dict[str, Any] = {
        "line_message_id": message.external_id,
        "user_id": user_id,
        "message_type": message.kind.value,
        "timestamp": occurred_at,
        "processed": False,
    }
    metadata = dict(message.extra)

    if message.kind is MessageKind.TEXT:
        fields["text_content"] = message.text
    elif message.kind is MessageKind.STICKER:
        fields["text_content"] = render_sticker_text(message.sticker_ref)
        metadata["sticker"] = {
            "package_id": message.sticker_ref.package_id,
            "sticker_id": message.sticker_ref.sticker_id,
        }
    elif message.kind is MessageKind.LOCATION:
        location = message.location_ref
        fields["text_content"] = render_location_text(location)
        metadata["location"] = {
            "lat": location.lat,
            "lng": location.lng,
            "address": location.address,
            "title": location.title,
        }
    elif message.kind.has_content:
        ref = message.file_ref or FileRef()
        fields.update(
            file_id=message.external_id,
            file_name=ref.name,
            file_path=ref.path,
            file_size=ref.size,
            file_type=ref.mime_type,
        )
        metadata["pending_storage_path"] = f"{bucket_folder(message.kind.value)}{message.external_id}"

    fields["metadata"] = metadata or None
    return fields


def enrichment_failure(error: Exception) -> str:
    """Metric label for a failed profile fetch or store."""
    if isinstance(error, ProfileNotFoundError):
        return "not_found"
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    return "error"


# =============================================================================
# Pipeline
# =============================================================================

class IngestionPipeline:
    """
    Applies inbound LINE events through the persistence and messaging ports.

    Args:
        persistence: PersistencePort implementation
        messaging: MessagingPort implementation used for profile enrichment
        persistence_timeout: seconds allowed for one persistence call
        enrichment_timeout: seconds allowed for one LINE profile fetch
    """

    def __init__(
        self,
        persistence: PersistencePort,
        messaging: MessagingPort,
        persistence_timeout: float = 10.0,
        enrichment_timeout: float = 10.0,
    ):
        self._persistence = persistence
        self._messaging = messaging
        self._persistence_timeout = persistence_timeout
        self._enrichment_timeout = enrichment_timeout
        self._enrichment_tasks: set[asyncio.Task] = set()
        self._handlers = {
            EventKind.MESSAGE: self._handle_message,
            EventKind.FOLLOW: self._handle_follow,
            EventKind.UNFOLLOW: self._handle_unfollow,
        }

    @property
    def pending_enrichments(self) -> int:
        return len(self._enrichment_tasks)

    async def ingest(self, events: Sequence[InboundEvent]) -> BatchResult:
        """Apply every event of a batch; per-event failures land in the result."""
        logger.info(f"Ingesting batch of {len(events)} events")
        results = await asyncio.gather(
            *(self._process(index, event) for index, event in enumerate(events))
        )
        batch = BatchResult(list(results))
        logger.info(f"Batch ingested: {batch.counts()}")
        return batch

    async def drain(self) -> None:
        """Wait for outstanding enrichment tasks."""
        while self._enrichment_tasks:
            await asyncio.gather(*list(self._enrichment_tasks), return_exceptions=True)

    async def _process(self, index: int, event: InboundEvent) -> EventResult:
        handler = self._handlers.get(event.kind)
        reason = None

        if event.error:
            logger.warning(f"Event {index} ({event.label}) rejected: {event.error}")
            outcome, reason = Outcome.FAILED, event.error
        elif handler is None:
            logger.info(f"Unhandled event type: {event.label}")
            outcome = Outcome.SKIPPED
        elif not event.source_user_id:
            logger.warning(f"Event {index} ({event.label}) has no source user id")
            outcome, reason = Outcome.FAILED, "event has no source user id"
        else:
            try:
                outcome = await handler(event)
            except asyncio.TimeoutError:
                logger.error(f"Event {index} ({event.label}) timed out for {event.source_user_id}")
                outcome, reason = Outcome.FAILED, "persistence call timed out"
            except Exception as e:
                logger.exception(f"Event {index} ({event.label}) failed for {event.source_user_id}: {e}")
                outcome, reason = Outcome.FAILED, str(e) or type(e).__name__

        record_event_outcome(event.kind.value, outcome.value)
        return EventResult(index=index, kind=event.label, outcome=outcome, reason=reason)

    async def _persist(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self._persistence_timeout)

    async def _resolve_or_create(
        self, line_user_id: str, fields: dict[str, Any]
    ) -> tuple[UserRecord, bool]:
        """
        Return (user, created). A concurrent event may create the same user
        between lookup and insert; the unique constraint catches that and the
        winner's row is returned instead.
        """
        user = await self._persist(self._persistence.find_user_by_external_id(line_user_id))
        if user is not None:
            return user, False

        try:
            user = await self._persist(
                self._persistence.create_user({"line_user_id": line_user_id, **fields})
            )
        except UniqueViolationError:
            user = await self._persist(self._persistence.find_user_by_external_id(line_user_id))
            if user is None:
                raise
            return user, False

        logger.info(f"New user {user.id} for {line_user_id}")
        return user, True

    async def _handle_message(self, event: InboundEvent) -> Outcome:
        occurred_at = event.occurred_at
        # Counters start at 0 and are bumped in the same transaction that stores
        # the message, so a redelivered copy racing the creating event cannot
        # count twice and a stored message is never left uncounted.
        user, created = await self._resolve_or_create(
            event.source_user_id,
            {
                "is_active": True,
                "first_message_at": occurred_at,
                "last_message_at": occurred_at,
                "message_count": 0,
                "unread_count": 0,
            },
        )
        if created:
            self._schedule_enrichment(event.source_user_id, user.id)

        try:
            await self._persist(
                self._persistence.record_message(
                    build_message_fields(event.message, user.id, occurred_at)
                )
            )
        except UniqueViolationError:
            logger.info(f"Duplicate delivery of message {event.message.external_id}")
            return Outcome.DUPLICATE
        return Outcome.APPLIED

    async def _handle_follow(self, event: InboundEvent) -> Outcome:
        user, created = await self._resolve_or_create(event.source_user_id, {"is_active": True})
        if not created and not user.is_active:
            await self._persist(self._persistence.update_user(user.id, {"is_active": True}))
            logger.info(f"User {user.id} reactivated")
        self._schedule_enrichment(event.source_user_id, user.id)
        return Outcome.APPLIED

    async def _handle_unfollow(self, event: InboundEvent) -> Outcome:
        user = await self._persist(
            self._persistence.find_user_by_external_id(event.source_user_id)
        )
        if user is None:
            logger.info(f"Unfollow from unknown user {event.source_user_id}, nothing to do")
            return Outcome.APPLIED
        await self._persist(self._persistence.update_user(user.id, {"is_active": False}))
        logger.info(f"User {user.id} deactivated")
        return Outcome.APPLIED

    # -- profile enrichment ----------------------------------------------------

    def _schedule_enrichment(self, line_user_id: str, user_id: int) -> None:
        task = asyncio.create_task(self._enrich(line_user_id, user_id))
        self._enrichment_tasks.add(task)
        task.add_done_callback(self._enrichment_tasks.discard)

    async def _enrich(self, line_user_id: str, user_id: int) -> None:
        try:
            await self._fetch_and_store_profile(line_user_id, user_id)
        except ProfileNotFoundError:
            logger.warning(f"Profile enrichment skipped, {line_user_id} blocked the channel or left LINE")
            record_enrichment("not_found")
        except asyncio.TimeoutError:
            logger.warning(f"Profile enrichment timed out for {line_user_id}")
            record_enrichment("timeout")
        except Exception as e:
            logger.error(f"Profile enrichment failed for {line_user_id}: {e}")
            record_enrichment("error")
        else:
            record_enrichment("updated")

    async def _fetch_and_store_profile(self, line_user_id: str, user_id: int) -> Optional[UserRecord]:
        profile = await asyncio.wait_for(
            self._messaging.get_profile(line_user_id), timeout=self._enrichment_timeout
        )
        user = await self._persist(self._persistence.update_user(user_id, profile.as_user_fields()))
        logger.info(f"Profile stored for user {user_id}")
        return user

    async def refresh_profile(self, user_id: int) -> UserRecord:
        """
        Re-fetch the LINE profile of one user and store it.

        Raises:
            UserNotFoundError: no user with this internal id
            ProfileNotFoundError: the contact blocked the channel or left LINE
            MessagingError: any other LINE API failure
        """
        user = await self._persist(self._persistence.get_user(user_id))
        if user is None:
            raise UserNotFoundError(user_id)

        try:
            updated = await self._fetch_and_store_profile(user.line_user_id, user.id)
        except Exception as e:
            record_enrichment(enrichment_failure(e))
            raise
        if updated is None:
            raise UserNotFoundError(user_id)
        record_enrichment("updated")
        return updated

    async def refresh_profiles(self, user_ids: Sequence[int]) -> dict[str, Any]:
        """Refresh several users one after another; failures are collected, not raised."""
        report: dict[str, Any] = {"success": [], "failed": [], "total": len(user_ids)}

        for user_id in user_ids:
            try:
                user = await self.refresh_profile(user_id)
            except UserNotFoundError:
                report["failed"].append({"user_id": user_id, "reason": "user not found"})
            except asyncio.TimeoutError:
                report["failed"].append({"user_id": user_id, "reason": "timed out"})
            except Exception as e:
                report["failed"].append({"user_id": user_id, "reason": str(e)})
            else:
                report["success"].append({"user_id": user_id, "picture_url": user.picture_url})

        logger.info(
            f"Batch refresh done - success: {len(report['success'])}, failed: {len(report['failed'])}"
        )
        return report
