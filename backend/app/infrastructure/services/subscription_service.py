"""
Subscription Service

User-facing subscription operations: the computed status view, the access
guard, cancellation and reactivation, payment history, plus the admin
bootstrap and expiry sweep.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain import state_machine
from app.domain.billing_dto import (
    BootstrapSubscriptionRequest,
    PaymentHistoryItem,
    PaymentMethodSummary,
    SubscriptionStatusResponse,
    SweepReport,
)
from app.domain.state_machine import InvalidTransition, compute_status
from app.domain.subscription import (
    EntitlementStatus,
    Subscription,
    SubscriptionStatus,
    utc_now,
)
from app.infrastructure.db.repositories import (
    PaymentHistoryRepository,
    SubscriptionRepository,
)
from app.infrastructure.exceptions import (
    ContractNotSigned,
    NotFoundError,
    PaymentRequired,
    ValidationError,
)


logger = logging.getLogger(__name__)

CONTRACT_REDIRECT = "/contract"
SUBSCRIBE_REDIRECT = "/subscription"
UPDATE_PAYMENT_REDIRECT = "/subscription/payment-method"


class SubscriptionService:
    """
    Subscription operations on top of the state machine.

    Args:
        session_factory: Async session factory
        settings: Application settings (grace period)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock

    async def _get(self, user_id: str) -> Optional[Subscription]:
        async with self._session_factory() as session:
            return await SubscriptionRepository(session).get_by_user_id(user_id)

    def _entitlement(self, subscription: Optional[Subscription]) -> EntitlementStatus:
        return compute_status(subscription, self._clock(), self._settings.grace_period_days)

    def _to_response(self, subscription: Optional[Subscription]) -> SubscriptionStatusResponse:
        view = self._entitlement(subscription)
        if subscription is None:
            return SubscriptionStatusResponse(
                has_subscription=False,
                is_active=False,
                requires_contract_signature=True,
                reason=view.reason,
            )

        method = subscription.payment_method
        return SubscriptionStatusResponse(
            has_subscription=True,
            status=subscription.status,
            plan_type=subscription.plan_type,
            is_active=view.is_active,
            requires_payment_update=view.requires_payment_update,
            in_grace_period=view.in_grace_period,
            grace_period_days_remaining=view.grace_period_days_remaining,
            requires_contract_signature=view.requires_contract_signature,
            trial_days_left=view.trial_days_left,
            trial_ends_at=subscription.trial_ends_at,
            current_period_ends_at=subscription.current_period_ends_at,
            next_charge_date=subscription.next_charge_date,
            access_ends_at=view.access_ends_at,
            cancelled_at=subscription.cancelled_at,
            contract_signed=subscription.contract_signed,
            payment_method=(
                PaymentMethodSummary(
                    last4=method.last4,
                    expiry_month=method.expiry_month,
                    expiry_year=method.expiry_year,
                    brand=method.brand,
                    has_token=method.has_token,
                )
                if method else None
            ),
            reason=view.reason,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(self, user_id: str) -> SubscriptionStatusResponse:
        return self._to_response(await self._get(user_id))

    async def require_entitlement(self, user_id: str) -> EntitlementStatus:
        """
        Access guard for protected features.

        Raises:
            ContractNotSigned: Contract not signed (checked first)
            PaymentRequired: No active entitlement
        """
        subscription = await self._get(user_id)
        view = self._entitlement(subscription)
        if subscription is None or view.requires_contract_signature:
            raise ContractNotSigned(
                "A signed subscription agreement is required",
                redirect_to=CONTRACT_REDIRECT,
            )
        if not view.is_active:
            redirect = UPDATE_PAYMENT_REDIRECT if view.requires_payment_update else SUBSCRIBE_REDIRECT
            raise PaymentRequired(
                "An active subscription is required",
                redirect_to=redirect,
                details={"reason": view.reason},
            )
        return view

    async def list_payments(self, user_id: str, limit: int = 50) -> list[PaymentHistoryItem]:
        async with self._session_factory() as session:
            rows = await PaymentHistoryRepository(session).list_for_user(user_id, limit)
        return [
            PaymentHistoryItem(
                id=row.id,
                session_id=row.session_id,
                transaction_id=row.transaction_id,
                plan_id=row.plan_id,
                amount=float(row.amount),
                currency=row.currency,
                operation=row.operation,
                status=row.status,
                response_code=row.response_code,
                description=row.description,
                last4=row.last4,
                created_at=row.created_at,
            )
            for row in rows
        ]

    # =========================================================================
    # Commands
    # =========================================================================

    async def _transition(self, user_id: str, apply) -> SubscriptionStatusResponse:
        async with self._session_factory() as session, session.begin():
            repo = SubscriptionRepository(session)
            current = await repo.get_by_user_id(user_id)
            if current is None:
                raise NotFoundError(
                    f"No subscription for user {user_id}",
                    operation="transition",
                    table="subscriptions",
                )
            try:
                updated = apply(current)
            except InvalidTransition as e:
                raise ValidationError(str(e), {"status": current.status.value})
            saved = await repo.save(updated)
        return self._to_response(saved)

    async def cancel(self, user_id: str, reason: Optional[str] = None) -> SubscriptionStatusResponse:
        """Cancel renewal. Cancelling twice is a no-op."""
        now = self._clock()
        response = await self._transition(
            user_id, lambda sub: state_machine.cancel(sub, now, reason)
        )
        logger.info(f"[SUBSCRIPTION] User {user_id} cancelled ({reason or 'no reason given'})")
        return response

    async def reactivate(self, user_id: str) -> SubscriptionStatusResponse:
        now = self._clock()
        response = await self._transition(
            user_id, lambda sub: state_machine.reactivate(sub, now)
        )
        logger.info(f"[SUBSCRIPTION] User {user_id} reactivated")
        return response

    async def bootstrap(self, request: BootstrapSubscriptionRequest) -> SubscriptionStatusResponse:
        """Create or overwrite a subscription outside the payment flow (admin)."""
        now = self._clock()
        if request.period_days:
            period_end = now + timedelta(days=request.period_days)
        else:
            period_end = state_machine.next_period_end(request.plan_type, now)

        async with self._session_factory() as session, session.begin():
            repo = SubscriptionRepository(session)
            current = await repo.get_by_user_id(request.user_id)
            base = current or Subscription(user_id=request.user_id)
            trial = request.status == SubscriptionStatus.TRIAL
            signed_at = base.contract_signed_at
            if request.contract_signed and signed_at is None:
                signed_at = now
            updated = base.model_copy(
                update={
                    "plan_type": request.plan_type,
                    "status": request.status,
                    "trial_ends_at": period_end if trial else base.trial_ends_at,
                    "current_period_ends_at": None if trial else period_end,
                    "next_charge_date": period_end,
                    "last_payment_failure": None,
                    "cancelled_at": None,
                    "contract_signed": request.contract_signed or base.contract_signed,
                    "contract_signed_at": signed_at,
                }
            )
            saved = await repo.save(updated)

        logger.info(
            f"[SUBSCRIPTION] Admin bootstrap for {request.user_id}: "
            f"{request.plan_type.value}/{request.status.value} until {period_end}"
        )
        return self._to_response(saved)

    async def sweep_expired(self, limit: int = 1000) -> SweepReport:
        """Persist ``expired`` on subscriptions whose entitlement has lapsed."""
        now = self._clock()
        expired: list[str] = []
        async with self._session_factory() as session, session.begin():
            repo = SubscriptionRepository(session)
            for subscription in await repo.list_not_expired(limit):
                if state_machine.should_expire(subscription, now, self._settings.grace_period_days):
                    await repo.save(state_machine.expire(subscription))
                    expired.append(subscription.user_id)

        if expired:
            logger.info(f"[SUBSCRIPTION] Expired {len(expired)} lapsed subscriptions")
        return SweepReport(expired_count=len(expired), user_ids=expired)
