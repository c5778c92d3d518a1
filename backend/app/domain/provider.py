"""
Cardcom Provider Domain Models

Typed view over LowProfile notifications (webhook body and GetLpResult
response share the same shape), the correlation token carried in
ReturnValue, and the mapping from processor response codes to
user-facing failure reasons.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from app.domain.subscription import PaymentOperation, PlanType


class _CardcomModel(BaseModel):
    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class CardcomUIValues(_CardcomModel):
    card_owner_name: Optional[str] = Field(default=None, alias="CardOwnerName")
    card_owner_email: Optional[str] = Field(default=None, alias="CardOwnerEmail")
    card_owner_phone: Optional[str] = Field(default=None, alias="CardOwnerPhone")
    card_owner_identity_number: Optional[str] = Field(
        default=None, alias="CardOwnerIdentityNumber"
    )


class CardcomTokenInfo(_CardcomModel):
    token: Optional[str] = Field(default=None, alias="Token")
    token_expires_on: Optional[str] = Field(default=None, alias="TokenExDate")
    card_year: Optional[str] = Field(default=None, alias="CardYear")
    card_month: Optional[str] = Field(default=None, alias="CardMonth")
    approval_number: Optional[str] = Field(default=None, alias="TokenApprovalNumber")


class CardcomTransactionInfo(_CardcomModel):
    response_code: Optional[int] = Field(default=None, alias="ResponseCode")
    description: Optional[str] = Field(default=None, alias="Description")
    transaction_id: Optional[str] = Field(default=None, alias="TranzactionId")
    amount: Optional[Decimal] = Field(default=None, alias="Amount")
    last4: Optional[str] = Field(default=None, alias="Last4CardDigits")
    card_month: Optional[str] = Field(default=None, alias="CardMonth")
    card_year: Optional[str] = Field(default=None, alias="CardYear")
    card_owner_name: Optional[str] = Field(default=None, alias="CardOwnerName")
    card_owner_email: Optional[str] = Field(default=None, alias="CardOwnerEmail")
    approval_number: Optional[str] = Field(default=None, alias="ApprovalNumber")
    brand: Optional[str] = Field(default=None, alias="Brand")


class CardcomNotification(_CardcomModel):
    """
    LowProfile result as posted to the webhook.

    Older terminals post a flat body (Amount, Last4CardDigits, ... at the top
    level); newer ones nest the details under TranzactionInfo/TokenInfo.
    The accessor properties read the nested value first.
    """

    response_code: int = Field(alias="ResponseCode")
    description: Optional[str] = Field(default=None, alias="Description")
    low_profile_id: Optional[str] = Field(default=None, alias="LowProfileId")
    transaction_id_raw: Optional[str] = Field(default=None, alias="TranzactionId")
    return_value: Optional[str] = Field(default=None, alias="ReturnValue")
    operation: Optional[str] = Field(default=None, alias="Operation")
    amount_raw: Optional[Decimal] = Field(default=None, alias="Amount")
    last4_raw: Optional[str] = Field(default=None, alias="Last4CardDigits")
    card_month_raw: Optional[str] = Field(default=None, alias="CardMonth")
    card_year_raw: Optional[str] = Field(default=None, alias="CardYear")
    email_raw: Optional[str] = Field(default=None, alias="CardOwnerEmail")
    ui_values: Optional[CardcomUIValues] = Field(default=None, alias="UIValues")
    token_info: Optional[CardcomTokenInfo] = Field(default=None, alias="TokenInfo")
    transaction_info: Optional[CardcomTransactionInfo] = Field(
        default=None, alias="TranzactionInfo"
    )

    @property
    def effective_response_code(self) -> int:
        """Top-level code, overridden by a non-zero transaction code."""
        if self.response_code == 0 and self.transaction_info:
            inner = self.transaction_info.response_code
            if inner not in (None, 0):
                return inner
        return self.response_code

    @property
    def effective_description(self) -> Optional[str]:
        if self.transaction_info and self.transaction_info.description:
            if self.effective_response_code != self.response_code:
                return self.transaction_info.description
        return self.description

    @property
    def transaction_id(self) -> Optional[str]:
        if self.transaction_info and self.transaction_info.transaction_id:
            return self.transaction_info.transaction_id
        if self.transaction_id_raw and self.transaction_id_raw != "0":
            return self.transaction_id_raw
        return None

    @property
    def amount(self) -> Optional[Decimal]:
        if self.transaction_info and self.transaction_info.amount is not None:
            return self.transaction_info.amount
        return self.amount_raw

    @property
    def token(self) -> Optional[str]:
        if self.token_info and self.token_info.token:
            return self.token_info.token
        return None

    @property
    def last4(self) -> Optional[str]:
        if self.transaction_info and self.transaction_info.last4:
            return self.transaction_info.last4
        return self.last4_raw

    @property
    def card_month(self) -> Optional[str]:
        for source in (self.transaction_info, self.token_info):
            if source and source.card_month:
                return source.card_month
        return self.card_month_raw

    @property
    def card_year(self) -> Optional[str]:
        for source in (self.transaction_info, self.token_info):
            if source and source.card_year:
                return source.card_year
        return self.card_year_raw

    @property
    def email(self) -> Optional[str]:
        if self.ui_values and self.ui_values.card_owner_email:
            return self.ui_values.card_owner_email.strip().lower()
        if self.transaction_info and self.transaction_info.card_owner_email:
            return self.transaction_info.card_owner_email.strip().lower()
        if self.email_raw:
            return self.email_raw.strip().lower()
        return None

    @property
    def owner_name(self) -> Optional[str]:
        if self.ui_values and self.ui_values.card_owner_name:
            return self.ui_values.card_owner_name
        if self.transaction_info:
            return self.transaction_info.card_owner_name
        return None

    @property
    def is_conclusive(self) -> bool:
        """
        Whether this result describes a finished attempt.

        GetLpResult answers for pages the customer has not submitted yet with
        a non-zero code and no transaction or token details.
        """
        return (
            self.response_code == 0
            or self.transaction_info is not None
            or self.token_info is not None
        )


def extract_email(payload: dict[str, Any]) -> Optional[str]:
    """Pull the card owner's e-mail out of a raw payload without validating it."""
    for container in (payload.get("UIValues"), payload.get("TranzactionInfo"), payload):
        if isinstance(container, dict):
            value = container.get("CardOwnerEmail")
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
    return None


def is_successful(notification: CardcomNotification, operation: PaymentOperation) -> bool:
    """
    A result is successful when the processor answered code 0 and, for
    token-only pages, actually returned a token.
    """
    if notification.effective_response_code != 0:
        return False
    if operation == PaymentOperation.CREATE_TOKEN_ONLY:
        return notification.token is not None
    return True


# =============================================================================
# Correlation Token (ReturnValue)
# =============================================================================

ANONYMOUS_PREFIX = "anon-"


class CorrelationToken(BaseModel):
    """Parsed ReturnValue: ``<plan>.<user-or-anonymous-id>.<epoch-ms>``."""
    plan_id: Optional[PlanType] = None
    user_key: str
    issued_at_ms: Optional[int] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_key.startswith(ANONYMOUS_PREFIX)

    @property
    def user_id(self) -> Optional[str]:
        return None if self.is_anonymous else self.user_key


def new_anonymous_key() -> str:
    return f"{ANONYMOUS_PREFIX}{uuid4().hex[:16]}"


def build_reference(plan_id: PlanType, user_key: str, now: datetime) -> str:
    return f"{plan_id.value}.{user_key}.{int(now.timestamp() * 1000)}"


def parse_reference(value: Optional[str]) -> Optional[CorrelationToken]:
    """Parse a ReturnValue; None for anything not produced by build_reference."""
    if not value:
        return None
    parts = value.split(".")
    if len(parts) != 3 or not parts[1]:
        return None
    plan_part, user_key, ts_part = parts
    try:
        plan_id = PlanType(plan_part)
    except ValueError:
        plan_id = None
    issued_at = int(ts_part) if ts_part.isdigit() else None
    return CorrelationToken(plan_id=plan_id, user_key=user_key, issued_at_ms=issued_at)


# =============================================================================
# Response Code Mapping
# =============================================================================

RESPONSE_CODE_REASONS: dict[int, str] = {
    5: "INSUFFICIENT_FUNDS",
    33: "EXPIRED_CARD",
    36: "RESTRICTED_CARD",
    54: "EXPIRED_CARD",
    57: "SERVICE_NOT_ALLOWED",
    101: "DECLINED",
    107: "CALL_ISSUER",
    118: "INVALID_TRANSACTION",
    200: "FRAUD_SUSPICION",
    999: "GENERAL_ERROR",
}

FAILURE_MESSAGES: dict[str, str] = {
    "INSUFFICIENT_FUNDS": "The card has insufficient funds. Try another card.",
    "EXPIRED_CARD": "The card has expired. Please enter up-to-date card details.",
    "RESTRICTED_CARD": "The card is restricted. Try another card.",
    "SERVICE_NOT_ALLOWED": "This card cannot be used for this service. Try another card.",
    "DECLINED": "The card issuer declined the transaction. Try again or use another card.",
    "CALL_ISSUER": "Please contact your card issuer, or try another card.",
    "INVALID_TRANSACTION": "The transaction details were invalid. Please try again.",
    "FRAUD_SUSPICION": "The transaction was flagged. Try another card or contact support.",
    "GENERAL_ERROR": "The payment could not be processed. Please try again.",
    "MISSING_TOKEN": "The card could not be saved. Please try again.",
}


def failure_reason(response_code: int) -> str:
    return RESPONSE_CODE_REASONS.get(response_code, "GENERAL_ERROR")


def failure_message(reason: str) -> str:
    return FAILURE_MESSAGES.get(reason, FAILURE_MESSAGES["GENERAL_ERROR"])
