"""
Webhook Ingestor

Stores every provider notification before doing anything else, then
matches it to a payment session, resolves the paying user and hands it to
the Reconciler. Live webhooks, provider polling and recovery all go through
``process_event``.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.provider import CardcomNotification, extract_email, parse_reference
from app.domain.subscription import (
    ReconcileResult,
    WebhookFailureReason,
    WebhookSource,
    utc_now,
)
from app.infrastructure.db.models.payment_session import PaymentSessionModel
from app.infrastructure.db.models.webhook_event import WebhookEventModel
from app.infrastructure.db.repositories import (
    PaymentSessionRepository,
    UserProfileRepository,
    WebhookEventRepository,
)
from app.infrastructure.exceptions import NotFoundError, SessionNotFound
from app.infrastructure.services.reconciler import Reconciler


logger = logging.getLogger(__name__)


class EventProcessingResult(BaseModel):
    """Outcome of one pass over a stored event."""
    event_id: str
    processed: bool
    session_id: Optional[str] = None
    failure_reason: Optional[WebhookFailureReason] = None
    result: Optional[ReconcileResult] = None
    error: Optional[str] = None


def _text(value: Any, limit: int) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)[:limit]


class WebhookIngestor:
    """
    Webhook ingestion and dispatch.

    Args:
        session_factory: Async session factory
        reconciler: Reconciler applying matched notifications
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: Reconciler,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._reconciler = reconciler
        self._clock = clock

    # =========================================================================
    # Entry Points
    # =========================================================================

    async def store(
        self,
        payload: dict[str, Any],
        source: WebhookSource = WebhookSource.CARDCOM,
    ) -> str:
        """
        Persist the raw payload as an unprocessed event.

        Raises:
            SQLAlchemyError: The event could not be stored; the provider
                must be told to retry
        """
        event = WebhookEventModel(
            source=source.value,
            payload=payload,
            low_profile_id=_text(payload.get("LowProfileId"), 64),
            return_value=_text(payload.get("ReturnValue"), 255),
            email=extract_email(payload),
        )
        async with self._session_factory() as session, session.begin():
            await WebhookEventRepository(session).add(event)
        logger.info(
            f"[WEBHOOK] Stored {source.value} event {event.id} "
            f"(LowProfileId={event.low_profile_id})"
        )
        return event.id

    async def ingest(
        self,
        payload: dict[str, Any],
        source: WebhookSource = WebhookSource.CARDCOM,
    ) -> EventProcessingResult:
        """Store, then process. Only a storage failure propagates."""
        event_id = await self.store(payload, source)
        return await self.process_event(event_id)

    async def process_event(
        self,
        event_id: str,
        payload_override: Optional[dict[str, Any]] = None,
        user_id_override: Optional[str] = None,
        session_id_override: Optional[str] = None,
    ) -> EventProcessingResult:
        """
        Match, resolve and reconcile a stored event.

        Args:
            event_id: Stored webhook event id
            payload_override: Corrected payload to use instead of the stored one
            user_id_override: Paying user, when already known (recovery)
            session_id_override: Session to apply the event to (recovery)

        Returns:
            EventProcessingResult; failures are recorded on the event rather
            than raised
        """
        async with self._session_factory() as session:
            event = await WebhookEventRepository(session).get_by_id(event_id)
        if event is None:
            raise NotFoundError(f"Webhook event {event_id} not found", table="webhook_events")

        payload = payload_override if payload_override is not None else event.payload
        try:
            notification = CardcomNotification.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning(f"[WEBHOOK] Event {event_id} has an invalid payload: {e.error_count()} errors")
            return await self._mark_failed(event_id, WebhookFailureReason.INVALID_PAYLOAD, str(e))

        async with self._session_factory() as session:
            payment_session = await self._match_session(
                PaymentSessionRepository(session), notification, session_id_override
            )
        if payment_session is None:
            logger.warning(
                f"[WEBHOOK] Event {event_id} matches no session "
                f"(LowProfileId={notification.low_profile_id}, ReturnValue={notification.return_value})"
            )
            return await self._mark_failed(
                event_id, WebhookFailureReason.UNMATCHED, "No matching payment session"
            )

        user_id = user_id_override or await self._resolve_user(payment_session, notification)
        if user_id is None:
            logger.warning(f"[WEBHOOK] Event {event_id}: no user for session {payment_session.id}")
            return await self._mark_failed(
                event_id,
                WebhookFailureReason.USER_NOT_RESOLVED,
                "Payment could not be attributed to a user",
                session_id=payment_session.id,
            )

        try:
            result = await self._reconciler.reconcile(
                payment_session.id, notification, user_id, payload
            )
        except SessionNotFound as e:
            return await self._mark_failed(
                event_id, WebhookFailureReason.UNMATCHED, e.message
            )
        except SQLAlchemyError as e:
            return await self._mark_failed(
                event_id,
                WebhookFailureReason.RECONCILE_FAILED,
                str(e),
                session_id=payment_session.id,
            )

        return await self._mark_processed(event_id, payment_session.id, result)

    async def record_error(self, event_id: str, error: str) -> EventProcessingResult:
        """Flag a stored event whose processing raised unexpectedly."""
        return await self._mark_failed(event_id, WebhookFailureReason.RECONCILE_FAILED, error)

    # =========================================================================
    # Matching
    # =========================================================================

    async def _match_session(
        self,
        sessions: PaymentSessionRepository,
        notification: CardcomNotification,
        session_id_override: Optional[str],
    ) -> Optional[PaymentSessionModel]:
        if session_id_override:
            return await sessions.get_by_id(session_id_override)
        if notification.low_profile_id:
            found = await sessions.get_by_provider_session_id(notification.low_profile_id)
            if found is not None:
                return found
        if notification.return_value:
            return await sessions.get_by_reference(notification.return_value)
        return None

    async def _resolve_user(
        self,
        payment_session: PaymentSessionModel,
        notification: CardcomNotification,
    ) -> Optional[str]:
        """
        Session owner, then the user named in the correlation token, then
        the profile whose e-mail matches the checkout e-mail.
        """
        if payment_session.user_id:
            return payment_session.user_id

        for reference in (payment_session.reference, notification.return_value):
            token = parse_reference(reference)
            if token is not None and token.user_id:
                return token.user_id

        for email in (payment_session.contact_email, notification.email):
            if not email:
                continue
            async with self._session_factory() as session, session.begin():
                profile = await UserProfileRepository(session).get_by_email(email)
                if profile is not None:
                    await PaymentSessionRepository(session).attach_user(payment_session.id, profile.id)
                    logger.info(
                        f"[WEBHOOK] Attached session {payment_session.id} to user {profile.id} by e-mail"
                    )
                    return profile.id
        return None

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    async def _mark_processed(
        self,
        event_id: str,
        session_id: str,
        result: ReconcileResult,
    ) -> EventProcessingResult:
        async with self._session_factory() as session, session.begin():
            event = await WebhookEventRepository(session).get_by_id(event_id)
            event.processed = True
            event.processed_at = self._clock()
            event.processing_attempts += 1
            event.session_id = session_id
            event.failure_reason = None
            event.last_error = None
            event.result = result.model_dump(mode="json")
        return EventProcessingResult(
            event_id=event_id, processed=True, session_id=session_id, result=result
        )

    async def _mark_failed(
        self,
        event_id: str,
        reason: WebhookFailureReason,
        error: str,
        session_id: Optional[str] = None,
    ) -> EventProcessingResult:
        async with self._session_factory() as session, session.begin():
            event = await WebhookEventRepository(session).get_by_id(event_id)
            event.processing_attempts += 1
            event.failure_reason = reason.value
            event.last_error = error[:2000]
            if session_id:
                event.session_id = session_id
        return EventProcessingResult(
            event_id=event_id,
            processed=False,
            session_id=session_id,
            failure_reason=reason,
            error=error,
        )
