"""
Payment Status Service

Answers "did my payment go through?" for the return page. Local state is
checked first; while the session is unresolved, even past its expiry, the
provider is asked directly, and a conclusive answer is fed through the same
ingestion path as a webhook so the outcome is recorded once, whichever
arrives first.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain.billing_dto import PaymentDetails, PaymentStatusResponse
from app.domain.provider import CardcomNotification, failure_message, failure_reason
from app.domain.subscription import (
    PaymentSession,
    SessionStatus,
    WebhookSource,
    utc_now,
)
from app.infrastructure.db.repositories import (
    PaymentHistoryRepository,
    PaymentSessionRepository,
)
from app.infrastructure.exceptions import (
    ProviderError,
    SessionExpired,
    SessionNotFound,
    ValidationError,
)
from app.infrastructure.payments.cardcom_service import CardcomService
from app.infrastructure.services.webhook_ingestor import WebhookIngestor


logger = logging.getLogger(__name__)


class PaymentStatusService:
    """
    Status poller and redirect handler.

    Args:
        session_factory: Async session factory
        ingestor: Webhook ingestor used to record provider answers
        cardcom: Provider client
        settings: Application settings
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ingestor: WebhookIngestor,
        cardcom: CardcomService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._ingestor = ingestor
        self._cardcom = cardcom
        self._settings = settings or get_settings()
        self._clock = clock

    async def check(
        self,
        session_id: Optional[str] = None,
        low_profile_id: Optional[str] = None,
    ) -> PaymentStatusResponse:
        """
        Current status of a payment session.

        Raises:
            ValidationError: Neither identifier given
            SessionNotFound: Unknown session
            SessionExpired: Session timed out and the provider has no result
        """
        if not session_id and not low_profile_id:
            raise ValidationError("session_id or low_profile_id is required")

        payment_session = await self._load(session_id, low_profile_id)
        if payment_session.is_resolved:
            return await self._resolved_response(payment_session)

        # A page paid just before expiry still has a result at the provider
        if payment_session.provider_session_id:
            await self._ask_provider(payment_session)
            payment_session = await self._load(payment_session.id, None)
            if payment_session.is_resolved:
                return await self._resolved_response(payment_session)

        now = self._clock()
        if payment_session.is_expired(now):
            async with self._session_factory() as session, session.begin():
                await PaymentSessionRepository(session).mark_expired(payment_session.id, now)
            logger.info(f"[STATUS] Session {payment_session.id} expired without a result")
            raise SessionExpired(
                f"Payment session {payment_session.id} has expired",
                session_id=payment_session.id,
            )

        return self._pending_response(payment_session)

    async def _load(
        self,
        session_id: Optional[str],
        low_profile_id: Optional[str],
    ) -> PaymentSession:
        async with self._session_factory() as session:
            repo = PaymentSessionRepository(session)
            model = None
            if session_id:
                model = await repo.get_by_id(session_id)
            if model is None and low_profile_id:
                model = await repo.get_by_provider_session_id(low_profile_id)
        if model is None:
            raise SessionNotFound(
                "Payment session not found",
                operation="status_check",
                table="payment_sessions",
            )
        return PaymentSessionRepository.to_domain(model)

    async def _ask_provider(self, payment_session: PaymentSession) -> None:
        """Record a conclusive provider answer; anything else leaves the session pending."""
        try:
            raw = await self._cardcom.get_low_profile_result(payment_session.provider_session_id)
        except ProviderError as e:
            logger.warning(
                f"[STATUS] Provider lookup for {payment_session.id} failed, staying pending: {e.message}"
            )
            return

        try:
            notification = CardcomNotification.model_validate(raw)
        except PydanticValidationError:
            logger.warning(f"[STATUS] Unreadable provider result for {payment_session.id}")
            return

        if not notification.is_conclusive:
            return

        result = await self._ingestor.ingest(raw, source=WebhookSource.STATUS_POLL)
        logger.info(
            f"[STATUS] Provider result for {payment_session.id} recorded "
            f"(processed={result.processed})"
        )

    def _pending_response(self, payment_session: PaymentSession) -> PaymentStatusResponse:
        return PaymentStatusResponse(
            session_id=payment_session.id,
            status="pending",
            should_stop_polling=False,
            poll_interval_seconds=self._settings.status_poll_interval_seconds,
            message="Waiting for payment confirmation",
        )

    async def _resolved_response(self, payment_session: PaymentSession) -> PaymentStatusResponse:
        async with self._session_factory() as session:
            entry = await PaymentHistoryRepository(session).get_for_session(payment_session.id)

        completed = payment_session.status == SessionStatus.COMPLETED
        code = payment_session.response_code
        if completed:
            message = "Payment completed"
        elif code == 0:
            message = failure_message("MISSING_TOKEN")
        else:
            message = failure_message(failure_reason(code if code is not None else 999))

        details = PaymentDetails(
            transaction_id=payment_session.transaction_id,
            amount=float(entry.amount) if entry else float(payment_session.amount),
            last4=entry.last4 if entry else None,
            plan_id=payment_session.plan_id,
            operation=payment_session.operation,
            response_code=code,
            message=message,
        )
        return PaymentStatusResponse(
            session_id=payment_session.id,
            status="completed" if completed else "failed",
            payment_details=details,
            should_stop_polling=True,
            poll_interval_seconds=self._settings.status_poll_interval_seconds,
            message=message,
        )
