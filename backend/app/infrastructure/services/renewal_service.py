"""
Renewal Service

Charges the stored card token of subscriptions whose next charge date has
arrived: monthly trials converting to paid, and paid periods renewing.
Each charge gets a payment session of its own, and the provider's answer is
stored as a ``token_charge`` webhook event, so it reaches the subscription
through WebhookIngestor.process_event and the Reconciler exactly like a
hosted-page result.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain.billing_dto import RenewalChargeResult, RenewalReport
from app.domain.plans import PLANS
from app.domain.state_machine import compute_status
from app.domain.subscription import (
    RENEWAL_REFERENCE_PREFIX,
    PaymentOperation,
    ReconcileOutcome,
    SessionStatus,
    Subscription,
    WebhookSource,
    utc_now,
)
from app.infrastructure.db.models.base import new_id
from app.infrastructure.db.models.payment_session import PaymentSessionModel
from app.infrastructure.db.repositories import (
    PaymentSessionRepository,
    SubscriptionRepository,
    UserProfileRepository,
)
from app.infrastructure.exceptions import ProviderError
from app.infrastructure.payments.cardcom_service import CardcomService
from app.infrastructure.services.webhook_ingestor import WebhookIngestor


logger = logging.getLogger(__name__)


SKIPPED = "skipped"
PROVIDER_ERROR = "provider_error"


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def notification_from_charge(response: dict[str, Any], reference: str) -> dict[str, Any]:
    """
    Reshape a token charge answer into a LowProfile notification body.

    The session reference travels as ReturnValue; that is how the stored
    event finds its session again when it is replayed.
    """
    transaction_id = response.get("TranzactionId")
    if str(transaction_id) == "0":
        # Declines carry a zero id
        transaction_id = None
    transaction = _compact({
        "ResponseCode": response.get("ResponseCode"),
        "Description": response.get("Description"),
        "TranzactionId": transaction_id,
        "Amount": response.get("Amount"),
        "Last4CardDigits": response.get("Last4CardDigits"),
        "CardMonth": response.get("CardMonth"),
        "CardYear": response.get("CardYear"),
        "ApprovalNumber": response.get("ApprovalNumber"),
        "Brand": response.get("Brand"),
    })
    return _compact({
        "ResponseCode": response.get("ResponseCode"),
        "Description": response.get("Description"),
        "TranzactionId": transaction_id,
        "ReturnValue": reference,
        "Operation": PaymentOperation.CHARGE_ONLY.provider_name,
        "TranzactionInfo": transaction or None,
    })


class RenewalService:
    """
    Recurring and trial-conversion charging.

    Args:
        session_factory: Async session factory
        ingestor: Shared webhook ingestor
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

    async def charge_due(self, limit: int = 100) -> RenewalReport:
        """
        Charge every subscription whose next charge date has arrived.

        A provider error is reported for that subscription only. The session
        it opened stays unresolved and the next run charges it again under
        the same id, which the provider treats as the same transaction.

        Raises:
            ConfigurationError: Cardcom credentials are missing
        """
        now = self._clock()
        async with self._session_factory() as session:
            due = await SubscriptionRepository(session).list_due(now, limit)

        report = RenewalReport(due=len(due))
        for subscription in due:
            result = await self._renew(subscription, now)
            report.results.append(result)
            if result.outcome == ReconcileOutcome.CHARGED.value:
                report.charged += 1
            elif result.outcome == ReconcileOutcome.FAILED.value:
                report.failed += 1
            elif result.outcome == SKIPPED:
                report.skipped += 1
            else:
                report.unresolved += 1

        logger.info(
            f"[RENEWAL] Batch: {report.charged} charged, {report.failed} declined "
            f"of {report.due} due"
        )
        return report

    def _skip_reason(self, subscription: Subscription, now: datetime) -> Optional[str]:
        if not PLANS[subscription.plan_type].is_recurring:
            return "not_recurring"
        method = subscription.payment_method
        if method is None or not method.has_token:
            return "no_token"
        if not subscription.contract_signed:
            return "contract_not_signed"

        failure = subscription.last_payment_failure
        if failure is not None:
            if now < failure.at + timedelta(hours=self._settings.renewal_retry_hours):
                return "retry_later"
            view = compute_status(subscription, now, self._settings.grace_period_days)
            if not view.is_active:
                # Left for the expiry sweep
                return "grace_period_ended"
        return None

    async def _renew(self, subscription: Subscription, now: datetime) -> RenewalChargeResult:
        user_id = subscription.user_id
        skip = self._skip_reason(subscription, now)
        if skip is not None:
            logger.info(f"[RENEWAL] Skipping {user_id}: {skip}")
            return RenewalChargeResult(user_id=user_id, outcome=SKIPPED, message=skip)

        async with self._session_factory() as session:
            unresolved = await PaymentSessionRepository(session).find_unresolved_renewal(
                user_id, subscription.plan_type.value
            )
        if unresolved is not None and unresolved.status == SessionStatus.PENDING.value:
            # The answer is stored; recovery finishes it
            return RenewalChargeResult(
                user_id=user_id,
                outcome=SKIPPED,
                session_id=unresolved.id,
                message="awaiting_reconcile",
            )
        payment_session = unresolved or await self._open_session(subscription, now)

        method = subscription.payment_method
        try:
            response = await self._cardcom.charge_token(
                token=method.token,
                amount=payment_session.amount,
                unique_id=payment_session.id,
                card_month=method.expiry_month,
                card_year=method.expiry_year,
                email=payment_session.contact_email,
            )
        except ProviderError as e:
            logger.warning(
                f"[RENEWAL] Charge for {user_id} not confirmed, "
                f"session {payment_session.id} kept for the next run: {e.message}"
            )
            return RenewalChargeResult(
                user_id=user_id,
                outcome=PROVIDER_ERROR,
                session_id=payment_session.id,
                message=e.message,
            )

        event_id = await self._ingestor.store(
            notification_from_charge(response, payment_session.reference),
            WebhookSource.TOKEN_CHARGE,
        )
        async with self._session_factory() as session, session.begin():
            await PaymentSessionRepository(session).mark_pending(payment_session.id, self._clock())

        processed = await self._ingestor.process_event(event_id)
        if processed.result is None:
            logger.warning(
                f"[RENEWAL] Charge result for {user_id} stored as event {event_id} "
                f"but not applied: {processed.failure_reason}"
            )
            return RenewalChargeResult(
                user_id=user_id,
                outcome=processed.failure_reason.value,
                session_id=payment_session.id,
                event_id=event_id,
                message=processed.error,
            )

        result = processed.result
        return RenewalChargeResult(
            user_id=user_id,
            outcome=result.outcome.value,
            session_id=payment_session.id,
            event_id=event_id,
            transaction_id=result.transaction_id,
            subscription_status=result.subscription_status,
            message=result.message,
        )

    async def _open_session(self, subscription: Subscription, now: datetime) -> PaymentSessionModel:
        plan = PLANS[subscription.plan_type]
        session_id = new_id()
        async with self._session_factory() as session, session.begin():
            profile = await UserProfileRepository(session).get_by_id(subscription.user_id)
            model = PaymentSessionModel(
                id=session_id,
                reference=f"{RENEWAL_REFERENCE_PREFIX}{session_id}",
                user_id=subscription.user_id,
                owner_key=subscription.user_id,
                plan_id=plan.plan_id.value,
                amount=plan.price,
                currency=plan.currency,
                operation=PaymentOperation.CHARGE_ONLY.value,
                status=SessionStatus.INITIATED.value,
                contact_email=profile.email if profile else None,
                created_at=now,
                updated_at=now,
                # No page to return to, so a checkout never reuses it
                expires_at=now,
            )
            await PaymentSessionRepository(session).add(model)

        logger.info(
            f"[RENEWAL] Opened session {session_id} for {subscription.user_id} "
            f"({plan.plan_id.value}, {plan.price})"
        )
        return model
