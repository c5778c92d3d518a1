"""
Subscription API Routes

Entitlement status, the access guard, cancellation and reactivation,
payment history and the public plan table.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import (
    CurrentUserId,
    SubscriptionServiceDep,
    require_entitlement,
)
from app.domain.billing_dto import (
    CancelSubscriptionRequest,
    PaymentHistoryItem,
    PlanResponse,
    SubscriptionStatusResponse,
)
from app.domain.plans import PLANS


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions")


# =============================================================================
# Status
# =============================================================================

@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(user_id: CurrentUserId, service: SubscriptionServiceDep):
    """Computed entitlement view for the current user."""
    return await service.get_status(user_id)


@router.get("/access")
async def check_access(user_id: str = Depends(require_entitlement)):
    """
    Access guard.

    200 when the user may use protected features; 403 when the contract is
    unsigned and 402 when no payment covers today, each with ``redirect_to``.
    """
    return {"allowed": True, "user_id": user_id}


@router.get("/payments", response_model=list[PaymentHistoryItem])
async def list_payments(
    user_id: CurrentUserId,
    service: SubscriptionServiceDep,
    limit: int = Query(default=50, ge=1, le=200),
):
    return await service.list_payments(user_id, limit)


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans():
    """Public plan table."""
    return [
        PlanResponse(
            plan_id=plan.plan_id,
            name=plan.name,
            price=float(plan.price),
            currency=plan.currency,
            billing_interval=plan.billing_interval,
            trial_days=plan.trial_days,
            default_operation=plan.default_operation,
            max_installments=plan.max_installments,
            features=plan.features,
        )
        for plan in PLANS.values()
    ]


# =============================================================================
# Lifecycle
# =============================================================================

@router.post("/cancel", response_model=SubscriptionStatusResponse)
async def cancel_subscription(
    user_id: CurrentUserId,
    service: SubscriptionServiceDep,
    request: Optional[CancelSubscriptionRequest] = None,
):
    """
    Stop renewal. Access continues until the paid period or trial ends.
    """
    return await service.cancel(user_id, request.reason if request else None)


@router.post("/reactivate", response_model=SubscriptionStatusResponse)
async def reactivate_subscription(user_id: CurrentUserId, service: SubscriptionServiceDep):
    """Undo a cancellation while the paid period is still running."""
    return await service.reactivate(user_id)
