"""
Payment Session Database Model

One row per hosted payment page opened with the provider.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel, JSONType, UTCDateTime


class PaymentSessionModel(BaseModel, table=True):
    """
    Payment session table.

    The id is generated before the provider call so it can travel in the
    redirect URLs; ``reference`` is the ReturnValue correlation token.
    """

    __tablename__ = "payment_sessions"

    provider_session_id: Optional[str] = Field(
        default=None, unique=True, index=True, max_length=64,
        description="Cardcom LowProfileId"
    )
    reference: str = Field(unique=True, index=True, max_length=255)

    # Ownership
    user_id: Optional[str] = Field(default=None, index=True, max_length=36)
    owner_key: str = Field(index=True, max_length=320)

    # What is being paid
    plan_id: str = Field(max_length=20)
    amount: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)
    currency: str = Field(default="ILS", max_length=3)
    operation: str = Field(max_length=32)

    status: str = Field(default="initiated", index=True, max_length=20)

    # Contact details entered before checkout
    contact_email: Optional[str] = Field(default=None, index=True, max_length=320)
    contact_name: Optional[str] = Field(default=None, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=50)

    url: Optional[str] = Field(default=None, max_length=2048)

    # Resolution
    transaction_id: Optional[str] = Field(default=None, max_length=64)
    response_code: Optional[int] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    provider_payload: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)

    expires_at: datetime = Field(sa_type=UTCDateTime, nullable=False)
    recovered: bool = Field(default=False)
