"""
Subscription Repository

Data access layer for subscription persistence.
Maps between the SQLModel row and the Subscription domain entity.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import (
    RENEWING_STATUSES,
    PaymentFailure,
    PaymentMethod,
    PlanType,
    Subscription,
    SubscriptionStatus,
    utc_now,
)
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class SubscriptionRepository(BaseRepository[SubscriptionModel]):
    """
    Repository for subscription data access.

    Reads return domain entities; ``save`` upserts by user id.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def _get_model(self, user_id: str) -> Optional[SubscriptionModel]:
        statement = select(SubscriptionModel).where(SubscriptionModel.user_id == user_id)
        result = await self._session.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        """
        Get subscription by user ID.

        Args:
            user_id: Auth user ID

        Returns:
            Subscription domain model or None
        """
        model = await self._get_model(user_id)
        return self._to_domain(model) if model else None

    async def list_not_expired(self, limit: int = 1000) -> list[Subscription]:
        statement = (
            select(SubscriptionModel)
            .where(SubscriptionModel.status != SubscriptionStatus.EXPIRED.value)
            .limit(limit)
        )
        result = await self._session.execute(statement)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def list_due(self, now: datetime, limit: int = 100) -> list[Subscription]:
        """Renewing subscriptions whose next charge date has arrived, oldest first."""
        statement = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status.in_([status.value for status in RENEWING_STATUSES]),
                SubscriptionModel.cancelled_at.is_(None),
                SubscriptionModel.next_charge_date.is_not(None),
                SubscriptionModel.next_charge_date <= now,
            )
            .order_by(SubscriptionModel.next_charge_date)
            .limit(limit)
        )
        result = await self._session.execute(statement)
        return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def save(self, subscription: Subscription) -> Subscription:
        """
        Create or update the user's subscription row.

        Args:
            subscription: Domain entity to persist

        Returns:
            Persisted subscription with id and timestamps
        """
        model = await self._get_model(subscription.user_id)
        fields = self._to_row(subscription)

        if model is None:
            model = SubscriptionModel(**fields)
            self._session.add(model)
            logger.info(
                f"Creating subscription for user {subscription.user_id}: "
                f"{subscription.plan_type.value}/{subscription.status.value}"
            )
        else:
            for key, value in fields.items():
                setattr(model, key, value)
            model.updated_at = utc_now()

        await self._session.flush()
        return self._to_domain(model)

    # =========================================================================
    # Mapping
    # =========================================================================

    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=model.id,
            user_id=model.user_id,
            plan_type=PlanType(model.plan_type),
            status=SubscriptionStatus(model.status),
            trial_ends_at=model.trial_ends_at,
            current_period_ends_at=model.current_period_ends_at,
            next_charge_date=model.next_charge_date,
            payment_method=(
                PaymentMethod.model_validate(model.payment_method)
                if model.payment_method else None
            ),
            contract_signed=model.contract_signed,
            contract_signed_at=model.contract_signed_at,
            last_payment_failure=(
                PaymentFailure.model_validate(model.last_payment_failure)
                if model.last_payment_failure else None
            ),
            cancelled_at=model.cancelled_at,
            cancellation_reason=model.cancellation_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_row(self, subscription: Subscription) -> dict:
        """Column values for a domain entity (id and timestamps excluded)."""
        return {
            "user_id": subscription.user_id,
            "plan_type": subscription.plan_type.value,
            "status": subscription.status.value,
            "trial_ends_at": subscription.trial_ends_at,
            "current_period_ends_at": subscription.current_period_ends_at,
            "next_charge_date": subscription.next_charge_date,
            "payment_method": (
                subscription.payment_method.model_dump(mode="json")
                if subscription.payment_method else None
            ),
            "contract_signed": subscription.contract_signed,
            "contract_signed_at": subscription.contract_signed_at,
            "last_payment_failure": (
                subscription.last_payment_failure.model_dump(mode="json")
                if subscription.last_payment_failure else None
            ),
            "cancelled_at": subscription.cancelled_at,
            "cancellation_reason": subscription.cancellation_reason,
        }
