"""
Base Model for SQLModel ORM

Provides common fields and behavior for all database models.
Ids are UUID strings so the same schema works on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

UTCDateTime = DateTime(timezone=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class TimestampMixin(SQLModel):
    """Mixin providing timestamp fields for models."""

    created_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_type=UTCDateTime,
        description="Record creation timestamp (UTC)"
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_type=UTCDateTime,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)"
    )


class UUIDMixin(SQLModel):
    """Mixin providing a UUID string primary key."""

    id: str = Field(
        default_factory=new_id,
        primary_key=True,
        max_length=36,
        description="Unique identifier (UUID v4)"
    )


class BaseModel(UUIDMixin, TimestampMixin):
    """
    Base model combining UUID and timestamp mixins.

    Provides: id, created_at, updated_at
    """
    pass
