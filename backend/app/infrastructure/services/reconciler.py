"""
Payment Reconciler

Applies one provider result to its payment session: resolves the session,
appends to the payment history and runs the subscription state machine,
all in a single transaction. A session is resolved at most once; any later
delivery for it returns the earlier outcome and writes nothing.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain import state_machine
from app.domain.provider import (
    CardcomNotification,
    failure_message,
    failure_reason,
    is_successful,
)
from app.domain.subscription import (
    PaymentMethod,
    PaymentOperation,
    PaymentSession,
    PaymentStatus,
    ReconcileOutcome,
    ReconcileResult,
    SessionStatus,
    utc_now,
)
from app.infrastructure.db.models.payment_history import PaymentHistoryModel
from app.infrastructure.db.repositories import (
    PaymentHistoryRepository,
    PaymentSessionRepository,
    SubscriptionRepository,
)
from app.infrastructure.exceptions import DuplicateReconciliation, SessionNotFound


logger = logging.getLogger(__name__)


def payment_method_from(notification: CardcomNotification) -> Optional[PaymentMethod]:
    """Card reference carried by a notification, if any."""
    if not notification.token and not notification.last4:
        return None
    token_info = notification.token_info
    brand = notification.transaction_info.brand if notification.transaction_info else None
    return PaymentMethod(
        last4=notification.last4,
        expiry_month=notification.card_month,
        expiry_year=notification.card_year,
        token=notification.token,
        token_expires_on=token_info.token_expires_on if token_info else None,
        brand=brand,
        approval_number=token_info.approval_number if token_info else None,
    )


class Reconciler:
    """
    Reconciles provider results with local state.

    Args:
        session_factory: Async session factory
        settings: Application settings (retry and trial configuration)
        clock: Returns the current UTC time
        sleep: Awaitable used between retries
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

    async def reconcile(
        self,
        session_id: str,
        notification: CardcomNotification,
        user_id: str,
        raw_payload: Optional[dict[str, Any]] = None,
    ) -> ReconcileResult:
        """
        Apply a notification to a session, retrying transient store errors.

        Args:
            session_id: Local payment session id
            notification: Parsed provider result
            user_id: Resolved paying user
            raw_payload: Provider JSON stored on the session

        Returns:
            ReconcileResult; ``duplicate`` is set when an earlier delivery
            had already resolved the session

        Raises:
            SessionNotFound: No such session
            SQLAlchemyError: Store still failing after all attempts
        """
        max_attempts = max(1, self._settings.reconcile_max_attempts)
        for attempt in range(max_attempts):
            try:
                return await self._reconcile_once(session_id, notification, user_id, raw_payload)
            except DuplicateReconciliation:
                logger.info(f"[RECONCILE] Session {session_id} already resolved, returning prior result")
                return await self.prior_result(session_id)
            except SQLAlchemyError as e:
                if attempt >= max_attempts - 1:
                    logger.error(
                        f"[RECONCILE] Session {session_id} failed after {max_attempts} attempts: {e}"
                    )
                    raise
                delay = min(
                    self._settings.retry_base_delay * (2 ** attempt),
                    self._settings.retry_max_delay,
                )
                logger.warning(
                    f"[RECONCILE] Store error on {session_id} (attempt {attempt + 1}), "
                    f"retrying in {delay}s: {e}"
                )
                await self._sleep(delay)

        raise RuntimeError("unreachable")

    async def _reconcile_once(
        self,
        session_id: str,
        notification: CardcomNotification,
        user_id: str,
        raw_payload: Optional[dict[str, Any]],
    ) -> ReconcileResult:
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            sessions = PaymentSessionRepository(session)
            model = await sessions.get_by_id(session_id)
            if model is None:
                raise SessionNotFound(f"Payment session {session_id} not found")
            payment_session = sessions.to_domain(model)
            operation = payment_session.operation

            success = is_successful(notification, operation)
            code = notification.effective_response_code

            claimed = await sessions.claim(
                session_id,
                SessionStatus.COMPLETED if success else SessionStatus.FAILED,
                resolved_at=now,
                transaction_id=notification.transaction_id,
                response_code=code,
                provider_payload=raw_payload,
                user_id=user_id,
            )
            if not claimed:
                raise DuplicateReconciliation(
                    f"Session {session_id} was already resolved", session_id=session_id
                )

            subscriptions = SubscriptionRepository(session)
            history = PaymentHistoryRepository(session)
            current = await subscriptions.get_by_user_id(user_id)
            payment_method = payment_method_from(notification)
            plan_type = payment_session.plan_id
            history_id = None

            if success and operation == PaymentOperation.CREATE_TOKEN_ONLY:
                updated = state_machine.on_token_stored(
                    current, user_id, plan_type, payment_method, now,
                    trial_days=self._settings.trial_days,
                )
                outcome = ReconcileOutcome.TOKEN_STORED
                message = "Card saved"
            elif success:
                entry = await history.add(
                    self._history_entry(payment_session, notification, user_id, PaymentStatus.COMPLETED, now)
                )
                history_id = entry.id
                updated = state_machine.on_payment_succeeded(
                    current, user_id, plan_type, now, payment_method
                )
                outcome = ReconcileOutcome.CHARGED
                message = "Payment completed"
            else:
                reason = failure_reason(code) if code != 0 else "MISSING_TOKEN"
                message = failure_message(reason)
                entry = await history.add(
                    self._history_entry(payment_session, notification, user_id, PaymentStatus.FAILED, now)
                )
                history_id = entry.id
                updated = None
                if operation.charges:
                    updated = state_machine.on_payment_failed(
                        current, user_id, plan_type, reason, code, now
                    )
                outcome = ReconcileOutcome.FAILED

            saved = await subscriptions.save(updated) if updated is not None else current

        logger.info(
            f"[RECONCILE] Session {session_id} -> {outcome.value} for user {user_id} "
            f"(code={code}, subscription={saved.status.value if saved else None})"
        )
        return ReconcileResult(
            session_id=session_id,
            user_id=user_id,
            outcome=outcome,
            transaction_id=notification.transaction_id,
            subscription_status=saved.status if saved else None,
            payment_history_id=history_id,
            message=message,
        )

    def _history_entry(
        self,
        payment_session: PaymentSession,
        notification: CardcomNotification,
        user_id: str,
        status: PaymentStatus,
        now: datetime,
    ) -> PaymentHistoryModel:
        amount = notification.amount
        if amount is None:
            amount = payment_session.amount
        return PaymentHistoryModel(
            user_id=user_id,
            session_id=payment_session.id,
            transaction_id=(
                notification.transaction_id
                or notification.low_profile_id
                or payment_session.id
            ),
            plan_id=payment_session.plan_id.value,
            amount=amount,
            currency=payment_session.currency,
            operation=payment_session.operation.value,
            status=status.value,
            response_code=notification.effective_response_code,
            description=(notification.effective_description or "")[:500] or None,
            last4=notification.last4,
            created_at=now,
            updated_at=now,
            payment_data={
                "low_profile_id": notification.low_profile_id,
                "return_value": notification.return_value,
                "card_expiry": (
                    f"{notification.card_month}/{notification.card_year}"
                    if notification.card_month and notification.card_year else None
                ),
                "approval_number": (
                    notification.transaction_info.approval_number
                    if notification.transaction_info else None
                ),
            },
        )

    async def prior_result(self, session_id: str) -> ReconcileResult:
        """Rebuild the result of an already resolved session without writing."""
        async with self._session_factory() as session:
            model = await PaymentSessionRepository(session).get_by_id(session_id)
            if model is None:
                raise SessionNotFound(f"Payment session {session_id} not found")
            payment_session = PaymentSessionRepository.to_domain(model)
            entry = await PaymentHistoryRepository(session).get_for_session(session_id)
            subscription = None
            if payment_session.user_id:
                subscription = await SubscriptionRepository(session).get_by_user_id(
                    payment_session.user_id
                )

        if payment_session.status == SessionStatus.COMPLETED:
            outcome = (
                ReconcileOutcome.CHARGED
                if payment_session.operation.charges
                else ReconcileOutcome.TOKEN_STORED
            )
        else:
            outcome = ReconcileOutcome.FAILED

        return ReconcileResult(
            session_id=session_id,
            user_id=payment_session.user_id,
            outcome=outcome,
            duplicate=True,
            transaction_id=payment_session.transaction_id,
            subscription_status=subscription.status if subscription else None,
            payment_history_id=entry.id if entry else None,
            message="Already processed",
        )
