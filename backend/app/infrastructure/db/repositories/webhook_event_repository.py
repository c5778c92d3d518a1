"""
Webhook Event Repository

Stored provider notifications and the recovery log.
"""

from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import WebhookFailureReason
from app.infrastructure.db.models.webhook_event import (
    WebhookEventModel,
    WebhookReprocessLogModel,
)
from app.infrastructure.db.repositories.base_repository import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEventModel]):
    """Repository for stored webhook events."""

    def __init__(self, session: AsyncSession):
        super().__init__(WebhookEventModel, session)

    async def list_unprocessed(self, limit: int = 100) -> list[WebhookEventModel]:
        stmt = (
            select(WebhookEventModel)
            .where(WebhookEventModel.processed.is_(False))
            .order_by(WebhookEventModel.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_for_recovery(
        self,
        email: Optional[str] = None,
        low_profile_id: Optional[str] = None,
    ) -> list[WebhookEventModel]:
        """
        Candidate events for reprocessing.

        Unprocessed events carrying the e-mail, plus every event for the
        given LowProfileId whatever its state.

        Args:
            email: Card owner e-mail (lower-case)
            low_profile_id: Provider session id
        """
        conditions = []
        if email:
            conditions.append(
                (WebhookEventModel.email == email) & WebhookEventModel.processed.is_(False)
            )
        if low_profile_id:
            conditions.append(WebhookEventModel.low_profile_id == low_profile_id)
        if not conditions:
            return []

        stmt = (
            select(WebhookEventModel)
            .where(or_(*conditions))
            .order_by(WebhookEventModel.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_retryable(
        self,
        max_attempts: int,
        limit: int = 50,
    ) -> list[WebhookEventModel]:
        """Unprocessed events that failed for a reason a retry can fix."""
        stmt = (
            select(WebhookEventModel)
            .where(
                WebhookEventModel.processed.is_(False),
                WebhookEventModel.failure_reason.in_([
                    WebhookFailureReason.RECONCILE_FAILED.value,
                    WebhookFailureReason.USER_NOT_RESOLVED.value,
                    WebhookFailureReason.UNMATCHED.value,
                ]),
                WebhookEventModel.processing_attempts < max_attempts,
            )
            .order_by(WebhookEventModel.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add_reprocess_log(self, entry: WebhookReprocessLogModel) -> WebhookReprocessLogModel:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_reprocess_log(self, event_id: str) -> list[WebhookReprocessLogModel]:
        stmt = (
            select(WebhookReprocessLogModel)
            .where(WebhookReprocessLogModel.event_id == event_id)
            .order_by(WebhookReprocessLogModel.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
