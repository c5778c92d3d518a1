"""
UserProfile SQLModel

Read-side mirror of the auth backend's ``profiles`` table. The billing
engine only uses it to resolve a user from an e-mail address.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from app.infrastructure.db.models.base import UTCDateTime, utc_now


class UserProfile(SQLModel, table=True):
    """Profile row keyed by the auth user id."""

    __tablename__ = "profiles"

    id: str = Field(primary_key=True, max_length=36, description="Auth user id")
    email: Optional[str] = Field(default=None, unique=True, index=True, max_length=320)
    full_name: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, nullable=False)
