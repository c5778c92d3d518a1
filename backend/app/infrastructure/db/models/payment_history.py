"""
Payment History Database Model

Append-only ledger of resolved charge attempts.
"""

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel, JSONType


class PaymentHistoryModel(BaseModel, table=True):
    """One row per (session, transaction); the pair is unique."""

    __tablename__ = "payment_history"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "transaction_id",
            name="uq_payment_history_session_transaction",
        ),
    )

    user_id: str = Field(index=True, max_length=36)
    session_id: Optional[str] = Field(default=None, index=True, max_length=36)
    transaction_id: Optional[str] = Field(default=None, max_length=64)

    plan_id: Optional[str] = Field(default=None, max_length=20)
    amount: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)
    currency: str = Field(default="ILS", max_length=3)
    operation: Optional[str] = Field(default=None, max_length=32)

    status: str = Field(index=True, max_length=20)
    response_code: Optional[int] = Field(default=None)
    description: Optional[str] = Field(default=None, max_length=500)
    last4: Optional[str] = Field(default=None, max_length=4)

    payment_data: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)
