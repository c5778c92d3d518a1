"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import datetime
from typing import Any, Optional

from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel, JSONType, UTCDateTime


class SubscriptionModel(BaseModel, table=True):
    """
    Subscription table, one row per user. Rows are never deleted.
    """

    __tablename__ = "subscriptions"

    user_id: str = Field(unique=True, index=True, max_length=36)

    plan_type: str = Field(default="monthly", max_length=20)
    status: str = Field(default="trial", index=True, max_length=20)

    # Lifecycle dates
    trial_ends_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    current_period_ends_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    next_charge_date: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Card reference (last4, expiry, provider token); never the card number
    payment_method: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)

    # Contract gate
    contract_signed: bool = Field(default=False)
    contract_signed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    last_payment_failure: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)

    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)
