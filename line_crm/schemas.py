"""
Pydantic schemas for request/response validation.

This module contains:
- Record models returned by the persistence adapter
- The LINE profile model returned by the messaging adapter
- Request models for the LINE webhook body and the user API
- Response models for API responses
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Record Models
# =============================================================================

class UserRecord(BaseModel):
    """Snapshot of a row in the users table."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    line_user_id: str
    display_name: Optional[str] = None
    picture_url: Optional[str] = None
    status_message: Optional[str] = None
    language: Optional[str] = None
    group_display_name: Optional[str] = None
    erp_bi_code: Optional[str] = None
    erp_bi_name: Optional[str] = None
    is_active: bool = True
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    message_count: int = Field(default=0, ge=0)
    unread_count: int = Field(default=0, ge=0)
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, v):
        return v or []

    @field_validator("first_message_at", "last_message_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class MessageRecord(BaseModel):
    """Snapshot of a row in the messages table."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    line_message_id: str
    user_id: int
    message_type: str
    text_content: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    timestamp: datetime
    processed: bool = False
    metadata: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("message_metadata", "metadata"),
    )
    created_at: Optional[datetime] = None

    @field_validator("timestamp", "created_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class Profile(BaseModel):
    """LINE profile as returned by GET /v2/bot/profile/{userId}."""
    model_config = ConfigDict(populate_by_name=True)

    display_name: Optional[str] = Field(None, alias="displayName")
    picture_url: Optional[str] = Field(None, alias="pictureUrl")
    status_message: Optional[str] = Field(None, alias="statusMessage")
    language: Optional[str] = None

    def as_user_fields(self) -> dict[str, Any]:
        return {
            "display_name": self.display_name,
            "picture_url": self.picture_url,
            "status_message": self.status_message,
            "language": self.language,
        }


# =============================================================================
# Pydantic Request Models
# =============================================================================

class LineEventSource(BaseModel):
    """Source object of a LINE webhook event."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "user"
    user_id: Optional[str] = Field(None, alias="userId")
    group_id: Optional[str] = Field(None, alias="groupId")
    room_id: Optional[str] = Field(None, alias="roomId")


class LineWebhookEvent(BaseModel):
    """
    A single event as delivered by the LINE platform.

    Only the fields the CRM reads are declared; the rest is kept as extra.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = Field(..., min_length=1)
    timestamp: int = Field(..., ge=0, description="Event time in epoch milliseconds")
    source: Optional[LineEventSource] = None
    message: Optional[dict[str, Any]] = None
    reply_token: Optional[str] = Field(None, alias="replyToken")
    webhook_event_id: Optional[str] = Field(None, alias="webhookEventId")


class LineWebhookBody(BaseModel):
    """
    Body of a LINE webhook call.

    An empty events list is valid: LINE sends one when the webhook URL is verified.
    Events stay raw here and are validated one by one as LineWebhookEvent, so a
    single unreadable event does not reject its siblings.
    """
    model_config = ConfigDict(extra="allow")

    destination: Optional[str] = None
    events: list[Any]


class BatchRefreshRequest(BaseModel):
    user_ids: list[int] = Field(default_factory=list, alias="userIds")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={"examples": [{"userIds": [1, 2, 3]}]},
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class OutcomeCounts(BaseModel):
    applied: int = Field(0, ge=0)
    duplicate: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)


class WebhookResponse(BaseModel):
    """Response model for a processed webhook batch."""
    success: bool = Field(default=True, description="Operation status")
    processed: int = Field(..., ge=0, description="Number of events processed")
    results: OutcomeCounts = Field(default_factory=OutcomeCounts)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class RefreshedUser(BaseModel):
    id: int
    display_name: Optional[str] = None
    picture_url: Optional[str] = None
    updated_at: Optional[datetime] = None


class RefreshProfileResponse(BaseModel):
    success: bool = True
    message: str = "profile refreshed"
    user: RefreshedUser


class RefreshFailure(BaseModel):
    user_id: int = Field(..., serialization_alias="userId")
    reason: str


class RefreshSuccess(BaseModel):
    user_id: int = Field(..., serialization_alias="userId")
    picture_url: Optional[str] = None


class BatchRefreshResponse(BaseModel):
    success: list[RefreshSuccess] = Field(default_factory=list)
    failed: list[RefreshFailure] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
