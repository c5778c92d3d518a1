"""
Payment API Routes

Opens hosted payment pages and answers status polls from the return page.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, status

from app.api.dependencies import (
    OptionalUserId,
    PaymentSessionServiceDep,
    PaymentStatusServiceDep,
)
from app.domain.billing_dto import (
    CreateSessionRequest,
    PaymentStatusRequest,
    PaymentStatusResponse,
    SessionCreatedResponse,
)
from app.infrastructure.exceptions import ValidationError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments")


@router.post(
    "/sessions",
    response_model=SessionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_session(
    request: CreateSessionRequest,
    service: PaymentSessionServiceDep,
    user_id: OptionalUserId,
):
    """
    Create a hosted payment page for a plan.

    An authenticated caller always pays for themselves; the body ``user_id``
    is only honoured for anonymous checkout when it is the only hint.
    """
    if user_id and request.user_id and request.user_id != user_id:
        raise ValidationError("user_id does not match the authenticated user")

    return await service.create_session(
        plan_id=request.plan_id,
        email=request.email,
        full_name=request.full_name,
        phone=request.phone,
        user_id=user_id or request.user_id,
        operation=request.operation_type,
    )


@router.post("/status", response_model=PaymentStatusResponse)
async def check_payment_status(
    request: PaymentStatusRequest,
    service: PaymentStatusServiceDep,
):
    """Poll the outcome of a payment session."""
    return await service.check(
        session_id=request.session_id,
        low_profile_id=request.low_profile_id,
    )


@router.get("/return", response_model=PaymentStatusResponse)
async def payment_return(
    service: PaymentStatusServiceDep,
    session_id: Optional[str] = Query(default=None),
    lowprofilecode: Optional[str] = Query(default=None),
    low_profile_id: Optional[str] = Query(default=None, alias="LowProfileId"),
):
    """
    Landing point for the provider redirect.

    Query parameters only identify the session; the answer always comes from
    a status check, never from the redirect itself.
    """
    return await service.check(
        session_id=session_id,
        low_profile_id=lowprofilecode or low_profile_id,
    )
