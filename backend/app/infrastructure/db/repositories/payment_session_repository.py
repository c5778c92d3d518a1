"""
Payment Session Repository

Data access for payment sessions, including the conditional update that
makes reconciliation idempotent.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import (
    CLAIMABLE_SESSION_STATUSES,
    OPEN_SESSION_STATUSES,
    RENEWAL_REFERENCE_PREFIX,
    PaymentSession,
    SessionStatus,
)
from app.infrastructure.db.models.payment_session import PaymentSessionModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


def _values(statuses) -> list[str]:
    return [status.value for status in statuses]


class PaymentSessionRepository(BaseRepository[PaymentSessionModel]):
    """Repository for payment session rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(PaymentSessionModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_provider_session_id(
        self,
        provider_session_id: str,
    ) -> Optional[PaymentSessionModel]:
        stmt = select(PaymentSessionModel).where(
            PaymentSessionModel.provider_session_id == provider_session_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> Optional[PaymentSessionModel]:
        stmt = select(PaymentSessionModel).where(PaymentSessionModel.reference == reference)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_open(
        self,
        owner_key: str,
        plan_id: str,
        now: datetime,
    ) -> Optional[PaymentSessionModel]:
        """
        Most recent unexpired open session for the same owner and plan.

        Args:
            owner_key: User id or ``anon:<email>``
            plan_id: Plan identifier
            now: Reference time for expiry

        Returns:
            Reusable session row or None
        """
        stmt = (
            select(PaymentSessionModel)
            .where(
                PaymentSessionModel.owner_key == owner_key,
                PaymentSessionModel.plan_id == plan_id,
                PaymentSessionModel.status.in_(_values(OPEN_SESSION_STATUSES)),
                PaymentSessionModel.expires_at > now,
            )
            .order_by(PaymentSessionModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_unresolved_renewal(
        self,
        user_id: str,
        plan_id: str,
    ) -> Optional[PaymentSessionModel]:
        """Latest token-charge session for the user that never got a result."""
        stmt = (
            select(PaymentSessionModel)
            .where(
                PaymentSessionModel.user_id == user_id,
                PaymentSessionModel.plan_id == plan_id,
                PaymentSessionModel.reference.startswith(RENEWAL_REFERENCE_PREFIX),
                PaymentSessionModel.status.in_(_values(OPEN_SESSION_STATUSES)),
            )
            .order_by(PaymentSessionModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_for_email(self, email: str) -> list[PaymentSessionModel]:
        stmt = (
            select(PaymentSessionModel)
            .where(PaymentSessionModel.contact_email == email)
            .order_by(PaymentSessionModel.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def claim(
        self,
        session_id: str,
        status: SessionStatus,
        resolved_at: datetime,
        transaction_id: Optional[str],
        response_code: Optional[int],
        provider_payload: Optional[dict[str, Any]],
        user_id: Optional[str] = None,
    ) -> bool:
        """
        Resolve a session exactly once.

        The update only matches rows that are not yet completed or failed,
        so of two concurrent deliveries only one sees a row count of 1.

        Returns:
            True if this call resolved the session
        """
        values: dict[str, Any] = {
            "status": status.value,
            "resolved_at": resolved_at,
            "transaction_id": transaction_id,
            "response_code": response_code,
            "provider_payload": provider_payload,
            "updated_at": resolved_at,
        }
        if user_id is not None:
            values["user_id"] = user_id

        stmt = (
            update(PaymentSessionModel)
            .where(
                PaymentSessionModel.id == session_id,
                PaymentSessionModel.status.in_(_values(CLAIMABLE_SESSION_STATUSES)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_pending(self, session_id: str, now: datetime) -> bool:
        """The provider answered; the result now waits for reconciliation."""
        stmt = (
            update(PaymentSessionModel)
            .where(
                PaymentSessionModel.id == session_id,
                PaymentSessionModel.status == SessionStatus.INITIATED.value,
            )
            .values(status=SessionStatus.PENDING.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_expired(self, session_id: str, now: datetime) -> bool:
        """Flip an open session past its expiry to ``expired``."""
        stmt = (
            update(PaymentSessionModel)
            .where(
                PaymentSessionModel.id == session_id,
                PaymentSessionModel.status.in_(_values(OPEN_SESSION_STATUSES)),
                PaymentSessionModel.expires_at <= now,
            )
            .values(status=SessionStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def attach_user(self, session_id: str, user_id: str) -> None:
        stmt = (
            update(PaymentSessionModel)
            .where(PaymentSessionModel.id == session_id)
            .values(user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    # =========================================================================
    # Mapping
    # =========================================================================

    @staticmethod
    def to_domain(model: PaymentSessionModel) -> PaymentSession:
        return PaymentSession.model_validate(model, from_attributes=True)
