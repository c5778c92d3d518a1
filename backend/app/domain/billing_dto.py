"""
Billing Request/Response DTOs

Pydantic schemas for the payments, contracts, subscriptions and admin APIs.
"""

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from app.domain.subscription import (
    PaymentOperation,
    PlanType,
    SubscriptionStatus,
)


# =============================================================================
# Payment Sessions
# =============================================================================

class CreateSessionRequest(BaseModel):
    """Request DTO for opening a hosted payment page."""
    plan_id: str = Field(..., description="monthly | annual | vip")
    user_id: Optional[str] = Field(
        default=None,
        description="Paying user; omitted for anonymous checkout"
    )
    email: Optional[str] = Field(default=None, description="Card owner e-mail")
    full_name: Optional[str] = Field(default=None, description="Card owner name")
    phone: Optional[str] = None
    operation_type: Optional[PaymentOperation] = Field(
        default=None,
        description="Override the plan's default operation (e.g. card update)"
    )


class SessionCreatedResponse(BaseModel):
    session_id: str
    url: str
    provider_session_id: Optional[str] = None
    reference: str
    operation: PaymentOperation
    amount: float
    currency: str
    expires_at: datetime
    reused: bool = False


class PaymentStatusRequest(BaseModel):
    """Either identifier is accepted; the session id wins when both are sent."""
    session_id: Optional[str] = None
    low_profile_id: Optional[str] = None


class PaymentDetails(BaseModel):
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    last4: Optional[str] = None
    plan_id: Optional[PlanType] = None
    operation: Optional[PaymentOperation] = None
    response_code: Optional[int] = None
    message: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    session_id: str
    status: str = Field(..., description="pending | completed | failed")
    payment_details: Optional[PaymentDetails] = None
    should_stop_polling: bool = False
    poll_interval_seconds: int = 5
    message: Optional[str] = None


# =============================================================================
# Contracts
# =============================================================================

class SignContractRequest(BaseModel):
    """Signed subscription agreement as captured by the contract form."""
    plan_id: str
    full_name: str
    email: str
    phone: Optional[str] = None
    id_number: Optional[str] = None
    address: Optional[str] = None
    contract_html: str = Field(..., description="Exact contract text the user saw")
    signature: str = Field(..., description="Signature image as a data URL")
    agreed_to_terms: bool = False
    agreed_to_privacy: bool = False
    browser_info: Optional[dict[str, Any]] = None


class ContractSignedResponse(BaseModel):
    signature_id: str
    signed_at: datetime
    contract_version: str


class ContractStatusResponse(BaseModel):
    signed: bool
    signed_at: Optional[datetime] = None
    contract_version: Optional[str] = None
    plan_id: Optional[str] = None


# =============================================================================
# Subscriptions
# =============================================================================

class PaymentMethodSummary(BaseModel):
    """Card details safe to show to the user. The provider token is omitted."""
    last4: Optional[str] = None
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None
    brand: Optional[str] = None
    has_token: bool = False


class SubscriptionStatusResponse(BaseModel):
    """Response DTO for subscription status."""
    has_subscription: bool
    status: Optional[SubscriptionStatus] = None
    plan_type: Optional[PlanType] = None
    is_active: bool = Field(description="Whether the user currently has access")
    requires_payment_update: bool = False
    in_grace_period: bool = False
    grace_period_days_remaining: Optional[int] = None
    requires_contract_signature: bool = False
    trial_days_left: Optional[int] = None
    trial_ends_at: Optional[datetime] = None
    current_period_ends_at: Optional[datetime] = None
    next_charge_date: Optional[datetime] = None
    access_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    contract_signed: bool = False
    payment_method: Optional[PaymentMethodSummary] = None
    reason: str = ""


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentHistoryItem(BaseModel):
    id: str
    session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    plan_id: Optional[str] = None
    amount: float
    currency: str
    operation: Optional[str] = None
    status: str
    response_code: Optional[int] = None
    description: Optional[str] = None
    last4: Optional[str] = None
    created_at: datetime


class PlanResponse(BaseModel):
    """Pricing information for a single plan."""
    plan_id: PlanType
    name: str
    price: float
    currency: str
    billing_interval: Optional[str] = None
    trial_days: int = 0
    default_operation: PaymentOperation
    max_installments: int = 1
    features: list[str]


# =============================================================================
# Admin / Recovery
# =============================================================================

class ReprocessRequest(BaseModel):
    email: Optional[str] = None
    low_profile_id: Optional[str] = None
    user_id: Optional[str] = None


class ReprocessEventResult(BaseModel):
    event_id: str
    outcome: str
    session_id: Optional[str] = None
    duplicate: bool = False
    message: Optional[str] = None


class TokenStatus(BaseModel):
    has_token: bool = False
    last4: Optional[str] = None
    expiry: Optional[str] = None
    token_expires_on: Optional[str] = None
    is_valid: bool = False


class ReprocessReport(BaseModel):
    user_id: str
    results: list[ReprocessEventResult] = []
    token_status: TokenStatus


class ProcessPendingReport(BaseModel):
    attempted: int = 0
    processed: int = 0
    still_pending: int = 0
    results: list[ReprocessEventResult] = []


class DriftItem(BaseModel):
    """A completed charge whose user has no active entitlement."""
    user_id: str
    payment_history_id: str
    session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    plan_id: Optional[str] = None
    amount: float
    paid_at: datetime
    subscription_status: Optional[SubscriptionStatus] = None


class WebhookEventSummary(BaseModel):
    id: str
    source: str
    low_profile_id: Optional[str] = None
    return_value: Optional[str] = None
    email: Optional[str] = None
    processed: bool
    failure_reason: Optional[str] = None
    processing_attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime


class BootstrapSubscriptionRequest(BaseModel):
    """Admin creation of a subscription outside the payment flow."""
    user_id: str
    plan_type: PlanType
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    period_days: Optional[int] = Field(
        default=None,
        ge=1,
        description="Length of the granted period; plan interval when omitted"
    )
    contract_signed: bool = True


class SweepReport(BaseModel):
    expired_count: int
    user_ids: list[str] = []


class RenewalChargeResult(BaseModel):
    """What the renewal batch did for one due subscription."""
    user_id: str
    outcome: str = Field(
        ...,
        description="charged | failed | skipped | provider_error, or the webhook failure reason"
    )
    session_id: Optional[str] = None
    event_id: Optional[str] = None
    transaction_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    message: Optional[str] = None


class RenewalReport(BaseModel):
    due: int = 0
    charged: int = 0
    failed: int = 0
    skipped: int = 0
    unresolved: int = 0
    results: list[RenewalChargeResult] = []
