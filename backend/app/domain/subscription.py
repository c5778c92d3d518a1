"""
Subscription Domain Models

Domain models for the subscription and payment lifecycle.
Enums and domain entities for the billing bounded context; request and
response DTOs live in billing_dto.py.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PlanType(str, Enum):
    """Purchasable plans."""
    MONTHLY = "monthly"
    ANNUAL = "annual"
    VIP = "vip"


class PaymentOperation(str, Enum):
    """What the hosted payment page is asked to do."""
    CHARGE_ONLY = "charge_only"
    CREATE_TOKEN_ONLY = "create_token_only"
    CHARGE_AND_CREATE_TOKEN = "charge_and_create_token"

    @property
    def charges(self) -> bool:
        return self != PaymentOperation.CREATE_TOKEN_ONLY

    @property
    def creates_token(self) -> bool:
        return self != PaymentOperation.CHARGE_ONLY

    @property
    def provider_name(self) -> str:
        """Operation name in the Cardcom LowProfile API."""
        return _PROVIDER_OPERATION_NAMES[self]


_PROVIDER_OPERATION_NAMES = {
    PaymentOperation.CHARGE_ONLY: "ChargeOnly",
    PaymentOperation.CREATE_TOKEN_ONLY: "CreateTokenOnly",
    PaymentOperation.CHARGE_AND_CREATE_TOKEN: "ChargeAndCreateToken",
}


class SessionStatus(str, Enum):
    """Payment session lifecycle status."""
    INITIATED = "initiated"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


# Sessions that may still be reused by a new checkout request
OPEN_SESSION_STATUSES = (SessionStatus.INITIATED, SessionStatus.PENDING)

# Sessions that a provider result may still resolve. Expired sessions stay
# claimable: the card may have been charged after the page timed out.
CLAIMABLE_SESSION_STATUSES = (
    SessionStatus.INITIATED,
    SessionStatus.PENDING,
    SessionStatus.EXPIRED,
)

RESOLVED_SESSION_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED)

# Reference of sessions opened by the renewal batch rather than a hosted page
RENEWAL_REFERENCE_PREFIX = "renewal-"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    TRIAL = "trial"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Subscriptions the renewal batch may charge when next_charge_date arrives
RENEWING_STATUSES = (
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.FAILED,
)


class PaymentStatus(str, Enum):
    """Outcome recorded in payment history."""
    COMPLETED = "completed"
    FAILED = "failed"


class ReconcileOutcome(str, Enum):
    CHARGED = "charged"
    TOKEN_STORED = "token_stored"
    FAILED = "failed"


class WebhookSource(str, Enum):
    """Where a stored provider notification came from."""
    CARDCOM = "cardcom"
    STATUS_POLL = "status_poll"
    RECOVERY = "recovery"
    TOKEN_CHARGE = "token_charge"


class WebhookFailureReason(str, Enum):
    UNMATCHED = "unmatched"
    INVALID_PAYLOAD = "invalid_payload"
    USER_NOT_RESOLVED = "user_not_resolved"
    RECONCILE_FAILED = "reconcile_failed"


# =============================================================================
# Domain Entities
# =============================================================================

class PaymentMethod(BaseModel):
    """Stored card reference. Never holds the card number."""
    last4: Optional[str] = None
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None
    token: Optional[str] = None
    token_expires_on: Optional[str] = None
    brand: Optional[str] = None
    approval_number: Optional[str] = None

    @property
    def has_token(self) -> bool:
        return bool(self.token)


class PaymentFailure(BaseModel):
    """Most recent failed charge on a subscription."""
    reason: str
    code: Optional[int] = None
    at: datetime

    @field_validator("at", mode="after")
    @classmethod
    def _coerce_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Subscription(BaseModel):
    """Core subscription domain entity."""
    id: Optional[str] = None
    user_id: str
    plan_type: PlanType = PlanType.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.TRIAL
    trial_ends_at: Optional[datetime] = None
    current_period_ends_at: Optional[datetime] = None
    next_charge_date: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    contract_signed: bool = False
    contract_signed_at: Optional[datetime] = None
    last_payment_failure: Optional[PaymentFailure] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator(
        "trial_ends_at",
        "current_period_ends_at",
        "next_charge_date",
        "contract_signed_at",
        "cancelled_at",
        "created_at",
        "updated_at",
        mode="after",
    )
    @classmethod
    def _coerce_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class PaymentSession(BaseModel):
    """One attempt to pay through the hosted payment page."""
    id: str
    provider_session_id: Optional[str] = None
    reference: str
    user_id: Optional[str] = None
    owner_key: str
    plan_id: PlanType
    amount: Decimal
    currency: str = "ILS"
    operation: PaymentOperation
    status: SessionStatus = SessionStatus.INITIATED
    contact_email: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    url: Optional[str] = None
    transaction_id: Optional[str] = None
    response_code: Optional[int] = None
    created_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    recovered: bool = False

    class Config:
        from_attributes = True

    @field_validator("created_at", "expires_at", "resolved_at", mode="after")
    @classmethod
    def _coerce_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_SESSION_STATUSES

    def is_expired(self, now: datetime) -> bool:
        """Expired by status or by clock."""
        if self.status == SessionStatus.EXPIRED:
            return True
        return not self.is_resolved and now >= self.expires_at


class EntitlementStatus(BaseModel):
    """Computed view of what a subscription currently grants."""
    status: Optional[SubscriptionStatus] = None
    plan_type: Optional[PlanType] = None
    is_active: bool = False
    requires_payment_update: bool = False
    in_grace_period: bool = False
    grace_period_days_remaining: Optional[int] = None
    requires_contract_signature: bool = False
    trial_days_left: Optional[int] = None
    access_ends_at: Optional[datetime] = None
    reason: str = Field(default="", description="Short machine-readable explanation")


class ReconcileResult(BaseModel):
    """Result of applying one provider notification to a session."""
    session_id: str
    user_id: Optional[str] = None
    outcome: ReconcileOutcome
    duplicate: bool = False
    transaction_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    payment_history_id: Optional[str] = None
    message: Optional[str] = None
