"""
Webhook Event Database Models

Raw provider notifications, stored before any processing, and the log of
recovery attempts made against them.
"""

from datetime import datetime
from typing import Any, Optional

from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel, JSONType, UTCDateTime


class WebhookEventModel(BaseModel, table=True):
    """
    Every inbound notification, plus conclusive results observed while
    polling the provider (``source='status_poll'``).
    """

    __tablename__ = "webhook_events"

    source: str = Field(default="cardcom", max_length=20)
    payload: dict[str, Any] = Field(default_factory=dict, sa_type=JSONType)

    # Extracted for lookup without parsing the payload
    low_profile_id: Optional[str] = Field(default=None, index=True, max_length=64)
    return_value: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, index=True, max_length=320)
    session_id: Optional[str] = Field(default=None, index=True, max_length=36)

    # Processing state
    processed: bool = Field(default=False, index=True)
    processed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    processing_attempts: int = Field(default=0)
    failure_reason: Optional[str] = Field(default=None, max_length=32)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    result: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)


class WebhookReprocessLogModel(BaseModel, table=True):
    """One row per recovery attempt per event."""

    __tablename__ = "webhook_reprocess_log"

    event_id: str = Field(index=True, max_length=36)
    requested_email: Optional[str] = Field(default=None, max_length=320)
    requested_low_profile_id: Optional[str] = Field(default=None, max_length=64)
    user_id: Optional[str] = Field(default=None, index=True, max_length=36)
    outcome: str = Field(max_length=32)
    details: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)
