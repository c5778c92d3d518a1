"""
Admin Routes for Billing Maintenance

Webhook recovery, drift detection, manual subscription bootstrap, the
renewal charge batch and the expiry sweep. Protected by API key authentication.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from app.api.dependencies import (
    RecoveryServiceDep,
    RenewalServiceDep,
    SubscriptionServiceDep,
)
from app.config.settings import get_settings
from app.domain.billing_dto import (
    BootstrapSubscriptionRequest,
    DriftItem,
    ProcessPendingReport,
    RenewalReport,
    ReprocessReport,
    ReprocessRequest,
    SubscriptionStatusResponse,
    SweepReport,
    WebhookEventSummary,
)
from app.domain.subscription import Subscription
from app.infrastructure.db.dependencies import SubscriptionRepoDep
from app.infrastructure.exceptions import NotFoundError


logger = logging.getLogger(__name__)


# =============================================================================
# Admin API Key Authentication
# =============================================================================

async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for protected operations")
) -> bool:
    """
    Verify admin API key from header.

    The admin key should be set in environment variable ADMIN_API_KEY.
    """
    expected_key = get_settings().admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


router = APIRouter(
    prefix="/admin",
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


# =============================================================================
# Webhook Recovery
# =============================================================================

@router.post("/recovery/reprocess", response_model=ReprocessReport)
async def reprocess_webhooks(request: ReprocessRequest, service: RecoveryServiceDep):
    """
    Replay stored notifications for one customer.

    Selects unprocessed events by e-mail, or every event for a LowProfileId,
    binds them to the resolved user and reconciles them again. Already
    applied payments come back as duplicates.
    """
    report = await service.reprocess(
        email=request.email,
        low_profile_id=request.low_profile_id,
        user_id=request.user_id,
    )
    logger.info(
        f"[RECOVERY] Admin reprocess for {report.user_id}: {len(report.results)} events"
    )
    return report


@router.post("/recovery/process-pending", response_model=ProcessPendingReport)
async def process_pending_webhooks(
    service: RecoveryServiceDep,
    limit: int = Query(default=50, ge=1, le=500),
):
    """Retry unprocessed events whose failure a retry can fix."""
    return await service.process_pending(limit)


@router.get("/webhooks/unprocessed", response_model=list[WebhookEventSummary])
async def list_unprocessed_webhooks(
    service: RecoveryServiceDep,
    limit: int = Query(default=100, ge=1, le=1000),
):
    events = await service.list_unprocessed(limit)
    return [
        WebhookEventSummary(
            id=event.id,
            source=event.source,
            low_profile_id=event.low_profile_id,
            return_value=event.return_value,
            email=event.email,
            processed=event.processed,
            failure_reason=event.failure_reason,
            processing_attempts=event.processing_attempts,
            last_error=event.last_error,
            created_at=event.created_at,
        )
        for event in events
    ]


@router.get("/payments/drift", response_model=list[DriftItem])
async def detect_payment_drift(
    service: RecoveryServiceDep,
    lookback_days: int = Query(default=400, ge=1, le=2000),
):
    """Completed charges whose user has no active subscription."""
    drift = await service.detect_drift(lookback_days)
    if drift:
        logger.warning(f"[RECOVERY] Drift detected for {len(drift)} users")
    return drift


# =============================================================================
# Subscriptions
# =============================================================================

@router.get("/subscriptions/{user_id}", response_model=Subscription)
async def get_user_subscription(user_id: str, repo: SubscriptionRepoDep):
    """Raw subscription record, including the stored payment method."""
    subscription = await repo.get_by_user_id(user_id)
    if subscription is None:
        raise NotFoundError(
            f"No subscription for user {user_id}",
            operation="get",
            table="subscriptions",
        )
    return subscription


@router.post("/subscriptions/bootstrap", response_model=SubscriptionStatusResponse)
async def bootstrap_subscription(
    request: BootstrapSubscriptionRequest,
    service: SubscriptionServiceDep,
):
    """Create or overwrite a subscription outside the payment flow."""
    return await service.bootstrap(request)


@router.post("/subscriptions/sweep", response_model=SweepReport)
async def sweep_expired_subscriptions(
    service: SubscriptionServiceDep,
    limit: int = Query(default=1000, ge=1, le=10000),
):
    """Persist ``expired`` on every subscription whose access has lapsed."""
    return await service.sweep_expired(limit)


@router.post("/subscriptions/charge-due", response_model=RenewalReport)
async def charge_due_subscriptions(
    service: RenewalServiceDep,
    limit: int = Query(default=100, ge=1, le=1000),
):
    """
    Charge the saved card of every subscription whose next charge date has
    arrived. Trials convert to paid; declines start the grace period.
    """
    report = await service.charge_due(limit)
    if report.unresolved:
        logger.warning(f"[RENEWAL] {report.unresolved} charges left unresolved")
    return report
