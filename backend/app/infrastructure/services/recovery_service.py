"""
Recovery Service

Operator tooling for payments that did not reconcile on their own:
webhooks that matched no session, anonymous checkouts whose user could not
be found, and events whose reconciliation kept failing. Every replay goes
through WebhookIngestor.process_event, so replaying an event that was
already applied is a no-op.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain.billing_dto import (
    DriftItem,
    ProcessPendingReport,
    ReprocessEventResult,
    ReprocessReport,
    TokenStatus,
)
from app.domain.plans import plan_from_amount
from app.domain.provider import CardcomNotification, build_reference, parse_reference
from app.domain.state_machine import compute_status, next_period_end
from app.domain.subscription import (
    PaymentMethod,
    PaymentOperation,
    PlanType,
    SessionStatus,
    utc_now,
)
from app.infrastructure.db.models.base import new_id
from app.infrastructure.db.models.payment_session import PaymentSessionModel
from app.infrastructure.db.models.webhook_event import (
    WebhookEventModel,
    WebhookReprocessLogModel,
)
from app.infrastructure.db.repositories import (
    PaymentHistoryRepository,
    PaymentSessionRepository,
    SubscriptionRepository,
    UserProfileRepository,
    WebhookEventRepository,
)
from app.infrastructure.exceptions import NotFoundError, ValidationError
from app.infrastructure.services.webhook_ingestor import (
    EventProcessingResult,
    WebhookIngestor,
)


logger = logging.getLogger(__name__)


def token_status_for(payment_method: Optional[PaymentMethod], now: datetime) -> TokenStatus:
    """Whether the stored card token can still be charged."""
    if payment_method is None:
        return TokenStatus()

    expiry = None
    is_valid = payment_method.has_token
    month, year = payment_method.expiry_month, payment_method.expiry_year
    if month and year and month.isdigit() and year.isdigit():
        full_year = int(year) + 2000 if len(year) <= 2 else int(year)
        expiry = f"{int(month):02d}/{full_year}"
        is_valid = is_valid and (full_year, int(month)) >= (now.year, now.month)

    return TokenStatus(
        has_token=payment_method.has_token,
        last4=payment_method.last4,
        expiry=expiry,
        token_expires_on=payment_method.token_expires_on,
        is_valid=is_valid,
    )


def _operation_from_payload(notification: CardcomNotification) -> PaymentOperation:
    amount = notification.amount or Decimal("0")
    if notification.token and amount == 0:
        return PaymentOperation.CREATE_TOKEN_ONLY
    if notification.token:
        return PaymentOperation.CHARGE_AND_CREATE_TOKEN
    return PaymentOperation.CHARGE_ONLY


class RecoveryService:
    """
    Reprocessing and drift detection.

    Args:
        session_factory: Async session factory
        ingestor: Shared webhook ingestor
        settings: Application settings
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ingestor: WebhookIngestor,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._ingestor = ingestor
        self._settings = settings or get_settings()
        self._clock = clock

    # =========================================================================
    # Reprocess by e-mail / LowProfileId
    # =========================================================================

    async def reprocess(
        self,
        email: Optional[str] = None,
        low_profile_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ReprocessReport:
        """
        Replay stored events for one customer.

        Args:
            email: Card owner e-mail; selects unprocessed events
            low_profile_id: Provider session id; selects events in any state
            user_id: Explicit user, skipping the e-mail lookup

        Raises:
            ValidationError: Neither e-mail nor LowProfileId given
            NotFoundError: No user could be resolved
        """
        if not email and not low_profile_id:
            raise ValidationError("email or low_profile_id is required")
        email = email.strip().lower() if email else None

        async with self._session_factory() as session:
            events = await WebhookEventRepository(session).find_for_recovery(email, low_profile_id)
            resolved_user = await self._resolve_user(session, user_id, email, low_profile_id)

        if resolved_user is None:
            raise NotFoundError(
                f"No user found for {email or low_profile_id}",
                operation="reprocess",
                table="profiles",
            )

        logger.info(
            f"[RECOVERY] Reprocessing {len(events)} events for user {resolved_user} "
            f"(email={email}, low_profile_id={low_profile_id})"
        )
        results = []
        for event in events:
            results.append(await self._reprocess_event(event, resolved_user, email, low_profile_id))

        async with self._session_factory() as session:
            subscription = await SubscriptionRepository(session).get_by_user_id(resolved_user)
        token_status = token_status_for(
            subscription.payment_method if subscription else None, self._clock()
        )
        return ReprocessReport(user_id=resolved_user, results=results, token_status=token_status)

    async def _resolve_user(
        self,
        session: AsyncSession,
        user_id: Optional[str],
        email: Optional[str],
        low_profile_id: Optional[str],
    ) -> Optional[str]:
        if user_id:
            return user_id
        if email:
            profile = await UserProfileRepository(session).get_by_email(email)
            if profile is not None:
                return profile.id
        if low_profile_id:
            payment_session = await PaymentSessionRepository(session).get_by_provider_session_id(
                low_profile_id
            )
            if payment_session is not None and payment_session.user_id:
                return payment_session.user_id
        return None

    async def _reprocess_event(
        self,
        event: WebhookEventModel,
        user_id: str,
        email: Optional[str],
        low_profile_id: Optional[str],
    ) -> ReprocessEventResult:
        payload: dict[str, Any] = dict(event.payload or {})
        now = self._clock()

        try:
            notification = CardcomNotification.model_validate(payload)
        except PydanticValidationError as e:
            outcome = await self._ingestor.process_event(event.id)
            return await self._log(event, user_id, email, low_profile_id, outcome, str(e))

        session_id, plan_id, error = await self._prepare_session(event, notification, user_id, email, now)
        if error is not None:
            await self._write_log(event, user_id, email, low_profile_id, "skipped", {"error": error})
            return ReprocessEventResult(event_id=event.id, outcome="skipped", message=error)

        payload["ReturnValue"] = build_reference(plan_id, user_id, now)
        outcome = await self._ingestor.process_event(
            event.id,
            payload_override=payload,
            user_id_override=user_id,
            session_id_override=session_id,
        )
        return await self._log(event, user_id, email, low_profile_id, outcome)

    async def _prepare_session(
        self,
        event: WebhookEventModel,
        notification: CardcomNotification,
        user_id: str,
        email: Optional[str],
        now: datetime,
    ) -> tuple[Optional[str], Optional[PlanType], Optional[str]]:
        """
        Find the event's session and attach the user, or create a recovered
        session when none was ever recorded. A recovered session's reference
        is derived from the event, so replaying the event finds it again.

        Returns:
            (session_id, plan_id, error)
        """
        token = parse_reference(notification.return_value)
        recovered_reference = f"recovered-{event.id}"

        async with self._session_factory() as session, session.begin():
            sessions = PaymentSessionRepository(session)
            existing = None
            if notification.low_profile_id:
                existing = await sessions.get_by_provider_session_id(notification.low_profile_id)
            if existing is None and notification.return_value:
                existing = await sessions.get_by_reference(notification.return_value)
            if existing is None:
                existing = await sessions.get_by_reference(recovered_reference)

            if existing is not None:
                if existing.user_id and existing.user_id != user_id:
                    return None, None, (
                        f"Session {existing.id} belongs to another user"
                    )
                if existing.user_id is None:
                    await sessions.attach_user(existing.id, user_id)
                return existing.id, PlanType(existing.plan_id), None

            plan_id = (
                token.plan_id if token is not None and token.plan_id
                else plan_from_amount(notification.amount)
            )
            operation = _operation_from_payload(notification)
            session_id = new_id()
            recovered = PaymentSessionModel(
                id=session_id,
                provider_session_id=notification.low_profile_id,
                reference=recovered_reference,
                user_id=user_id,
                owner_key=user_id,
                plan_id=plan_id.value,
                amount=notification.amount or Decimal("0"),
                operation=operation.value,
                status=SessionStatus.INITIATED.value,
                contact_email=email or notification.email,
                contact_name=notification.owner_name,
                created_at=now,
                updated_at=now,
                expires_at=now,
                recovered=True,
            )
            await sessions.add(recovered)
            logger.info(
                f"[RECOVERY] Created recovered session {recovered.id} "
                f"({plan_id.value}, {operation.value}) for user {user_id}"
            )
            return recovered.id, plan_id, None

    async def _log(
        self,
        event: WebhookEventModel,
        user_id: str,
        email: Optional[str],
        low_profile_id: Optional[str],
        outcome: EventProcessingResult,
        message: Optional[str] = None,
    ) -> ReprocessEventResult:
        if outcome.processed and outcome.result is not None:
            label = "duplicate" if outcome.result.duplicate else outcome.result.outcome.value
            message = message or outcome.result.message
        else:
            label = outcome.failure_reason.value if outcome.failure_reason else "failed"
            message = message or outcome.error

        await self._write_log(
            event, user_id, email, low_profile_id, label,
            {"session_id": outcome.session_id, "message": message},
        )
        return ReprocessEventResult(
            event_id=event.id,
            outcome=label,
            session_id=outcome.session_id,
            duplicate=bool(outcome.result and outcome.result.duplicate),
            message=message,
        )

    async def _write_log(
        self,
        event: WebhookEventModel,
        user_id: Optional[str],
        email: Optional[str],
        low_profile_id: Optional[str],
        outcome: str,
        details: dict[str, Any],
    ) -> None:
        async with self._session_factory() as session, session.begin():
            await WebhookEventRepository(session).add_reprocess_log(
                WebhookReprocessLogModel(
                    event_id=event.id,
                    requested_email=email,
                    requested_low_profile_id=low_profile_id,
                    user_id=user_id,
                    outcome=outcome,
                    details=details,
                )
            )

    # =========================================================================
    # Batch retry
    # =========================================================================

    async def process_pending(self, limit: int = 50) -> ProcessPendingReport:
        """Retry stored events that failed for a reason a retry can fix."""
        async with self._session_factory() as session:
            events = await WebhookEventRepository(session).list_retryable(
                self._settings.max_processing_attempts, limit
            )

        report = ProcessPendingReport(attempted=len(events))
        for event in events:
            outcome = await self._ingestor.process_event(event.id)
            if outcome.processed:
                report.processed += 1
            else:
                report.still_pending += 1
            report.results.append(
                ReprocessEventResult(
                    event_id=event.id,
                    outcome=(
                        outcome.result.outcome.value if outcome.result
                        else (outcome.failure_reason.value if outcome.failure_reason else "failed")
                    ),
                    session_id=outcome.session_id,
                    duplicate=bool(outcome.result and outcome.result.duplicate),
                    message=outcome.error,
                )
            )

        logger.info(
            f"[RECOVERY] Pending batch: {report.processed}/{report.attempted} processed"
        )
        return report

    async def list_unprocessed(self, limit: int = 100) -> list[WebhookEventModel]:
        async with self._session_factory() as session:
            return await WebhookEventRepository(session).list_unprocessed(limit)

    # =========================================================================
    # Drift detection
    # =========================================================================

    async def detect_drift(self, lookback_days: int = 400) -> list[DriftItem]:
        """
        Completed charges whose paid period is still running but whose user
        has no active subscription. The contract flag is ignored here.
        """
        now = self._clock()
        since = now - timedelta(days=lookback_days)
        drift: list[DriftItem] = []
        seen: set[str] = set()

        async with self._session_factory() as session:
            payments = await PaymentHistoryRepository(session).list_completed_since(since)
            subscriptions = SubscriptionRepository(session)

            for payment in payments:
                if payment.user_id in seen:
                    continue
                seen.add(payment.user_id)

                paid_at = payment.created_at
                if paid_at.tzinfo is None:
                    paid_at = paid_at.replace(tzinfo=now.tzinfo)
                try:
                    plan_type = PlanType(payment.plan_id)
                except ValueError:
                    continue
                period_end = next_period_end(plan_type, paid_at)
                if period_end is not None and period_end <= now:
                    continue

                subscription = await subscriptions.get_by_user_id(payment.user_id)
                view = compute_status(
                    subscription.model_copy(update={"contract_signed": True}) if subscription else None,
                    now,
                    self._settings.grace_period_days,
                )
                if view.is_active:
                    continue

                drift.append(
                    DriftItem(
                        user_id=payment.user_id,
                        payment_history_id=payment.id,
                        session_id=payment.session_id,
                        transaction_id=payment.transaction_id,
                        plan_id=payment.plan_id,
                        amount=float(payment.amount),
                        paid_at=paid_at,
                        subscription_status=subscription.status if subscription else None,
                    )
                )

        if drift:
            logger.warning(f"[RECOVERY] Found {len(drift)} paid users without access")
        return drift
