"""
Plan Configuration (Business Logic)

Prices, billing intervals and which payment operations each plan allows.
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel

from app.domain.subscription import PaymentOperation, PlanType


class PlanDefinition(BaseModel):
    """Static description of a purchasable plan."""
    plan_id: PlanType
    name: str
    price: Decimal
    currency: str = "ILS"
    billing_interval: Optional[str] = None  # "month" | "year" | None (one-time)
    trial_days: int = 0
    default_operation: PaymentOperation
    allowed_operations: tuple[PaymentOperation, ...]
    max_installments: int = 1
    features: list[str] = []

    @property
    def is_recurring(self) -> bool:
        return self.billing_interval is not None


PLANS: dict[PlanType, PlanDefinition] = {
    PlanType.MONTHLY: PlanDefinition(
        plan_id=PlanType.MONTHLY,
        name="Monthly",
        price=Decimal("371"),
        billing_interval="month",
        trial_days=30,
        default_operation=PaymentOperation.CREATE_TOKEN_ONLY,
        allowed_operations=(
            PaymentOperation.CREATE_TOKEN_ONLY,
            PaymentOperation.CHARGE_AND_CREATE_TOKEN,
        ),
        features=[
            "30-day free trial",
            "Full journal access",
            "Cancel any time",
        ],
    ),
    PlanType.ANNUAL: PlanDefinition(
        plan_id=PlanType.ANNUAL,
        name="Annual",
        price=Decimal("3371"),
        billing_interval="year",
        default_operation=PaymentOperation.CHARGE_AND_CREATE_TOKEN,
        allowed_operations=(
            PaymentOperation.CHARGE_AND_CREATE_TOKEN,
            PaymentOperation.CREATE_TOKEN_ONLY,
        ),
        max_installments=12,
        features=[
            "Full journal access",
            "Two months free compared to monthly",
        ],
    ),
    PlanType.VIP: PlanDefinition(
        plan_id=PlanType.VIP,
        name="VIP",
        price=Decimal("13121"),
        default_operation=PaymentOperation.CHARGE_ONLY,
        allowed_operations=(PaymentOperation.CHARGE_ONLY,),
        max_installments=12,
        features=[
            "Lifetime access",
            "Courses and community included",
        ],
    ),
}


def get_plan(plan_id: str) -> Optional[PlanDefinition]:
    """Look up a plan by id; None for unknown ids."""
    try:
        return PLANS[PlanType(plan_id)]
    except ValueError:
        return None


def amount_for(plan: PlanDefinition, operation: PaymentOperation) -> Decimal:
    """Amount to request from the provider. Token-only pages never charge."""
    if operation == PaymentOperation.CREATE_TOKEN_ONLY:
        return Decimal("0")
    return plan.price


def plan_from_amount(amount) -> PlanType:
    """
    Best-effort plan guess for a payment that carries no plan reference.

    Zero and anything up to the monthly price is monthly, up to the annual
    price is annual, above that VIP.
    """
    value = Decimal(str(amount or 0))
    if value <= PLANS[PlanType.MONTHLY].price:
        return PlanType.MONTHLY
    if value <= PLANS[PlanType.ANNUAL].price:
        return PlanType.ANNUAL
    return PlanType.VIP
