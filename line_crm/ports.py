"""Ports (interfaces) used by the ingestion pipeline.

The pipeline depends only on these two narrow contracts, so it can run against
the SQLAlchemy store and the LINE HTTP client in production and against
in-memory fakes in tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from line_crm.schemas import MessageRecord, Profile, UserRecord


class UniqueViolationError(Exception):
    """A write hit a unique constraint (e.g. a redelivered LINE message id)."""

    def __init__(self, table: str, key: Optional[str] = None):
        super().__init__(f"unique constraint violated on {table}" + (f" for {key}" if key else ""))
        self.table = table
        self.key = key


class MessagingError(Exception):
    """Generic LINE API failure (transport error or non-404 HTTP status)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProfileNotFoundError(MessagingError):
    """The contact blocked the channel or deleted their account."""

    def __init__(self, line_user_id: str):
        super().__init__(f"LINE profile not found for {line_user_id}", status_code=404)
        self.line_user_id = line_user_id


class PersistencePort(Protocol):
    """Storage operations required by the ingestion pipeline."""

    async def find_user_by_external_id(self, line_user_id: str) -> Optional[UserRecord]:
        ...

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        ...

    async def create_user(self, fields: dict[str, Any]) -> UserRecord:
        ...

    async def update_user(self, user_id: int, fields: dict[str, Any]) -> Optional[UserRecord]:
        ...

    async def increment_message_counters(
        self, user_id: int, last_message_at: datetime
    ) -> Optional[UserRecord]:
        ...

    async def insert_message(self, fields: dict[str, Any]) -> MessageRecord:
        ...

    async def record_message(self, fields: dict[str, Any]) -> MessageRecord:
        """Insert a message and bump its user's counters atomically."""
        ...

    async def select_all(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        batch_size: int = 1000,
    ) -> list[dict[str, Any]]:
        ...


class MessagingPort(Protocol):
    """LINE Messaging API operations required by the pipeline."""

    async def get_profile(self, line_user_id: str) -> Profile:
        ...

    async def reply_message(self, reply_token: str, messages: list[dict[str, Any]]) -> None:
        ...

    async def push_message(self, to: str, messages: list[dict[str, Any]]) -> None:
        ...
