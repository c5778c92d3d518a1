"""
Payment History Repository

Append-only access to the payment ledger.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import PaymentStatus
from app.infrastructure.db.models.payment_history import PaymentHistoryModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class PaymentHistoryRepository(BaseRepository[PaymentHistoryModel]):
    """Repository for payment history rows. There is no update or delete."""

    def __init__(self, session: AsyncSession):
        super().__init__(PaymentHistoryModel, session)

    async def get_for_session(self, session_id: str) -> Optional[PaymentHistoryModel]:
        stmt = (
            select(PaymentHistoryModel)
            .where(PaymentHistoryModel.session_id == session_id)
            .order_by(PaymentHistoryModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_for_session(self, session_id: str) -> int:
        stmt = select(PaymentHistoryModel.id).where(PaymentHistoryModel.session_id == session_id)
        result = await self._session.execute(stmt)
        return len(result.scalars().all())

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[PaymentHistoryModel]:
        """
        Most recent payments first.

        Args:
            user_id: Auth user ID
            limit: Maximum rows to return
        """
        stmt = (
            select(PaymentHistoryModel)
            .where(PaymentHistoryModel.user_id == user_id)
            .order_by(PaymentHistoryModel.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_completed_since(
        self,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[PaymentHistoryModel]:
        stmt = select(PaymentHistoryModel).where(
            PaymentHistoryModel.status == PaymentStatus.COMPLETED.value
        )
        if since is not None:
            stmt = stmt.where(PaymentHistoryModel.created_at >= since)
        stmt = stmt.order_by(PaymentHistoryModel.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
