"""
Payment Session Service

Opens hosted payment pages and records them as payment sessions.
An owner holds at most one unexpired open session per plan; a repeat request
reuses it instead of asking the provider for another page.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain.billing_dto import SessionCreatedResponse
from app.domain.plans import amount_for, get_plan
from app.domain.provider import build_reference, new_anonymous_key
from app.domain.subscription import (
    PaymentOperation,
    SessionStatus,
    utc_now,
)
from app.infrastructure.db.models.base import new_id
from app.infrastructure.db.models.payment_session import PaymentSessionModel
from app.infrastructure.db.repositories import PaymentSessionRepository
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.payments.cardcom_service import CardcomService


logger = logging.getLogger(__name__)


def owner_key_for(user_id: Optional[str], email: str) -> str:
    """Dedup key: the user id, or the e-mail for anonymous checkouts."""
    return user_id if user_id else f"anon:{email}"


def normalize_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValidationError("A valid e-mail address is required", {"field": "email"})
    return value


class PaymentSessionService:
    """
    Payment Session Manager.

    Args:
        session_factory: Async session factory
        cardcom: Provider client
        settings: Application settings
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cardcom: CardcomService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._cardcom = cardcom
        self._settings = settings or get_settings()
        self._clock = clock

    async def create_session(
        self,
        plan_id: str,
        email: Optional[str],
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        user_id: Optional[str] = None,
        operation: Optional[PaymentOperation] = None,
    ) -> SessionCreatedResponse:
        """
        Create (or reuse) a payment session for a plan.

        Raises:
            ValidationError: Unknown plan, bad e-mail, disallowed operation,
                or another operation already open for the plan
            ProviderUnavailable: Provider unreachable; nothing was persisted
            ProviderRejected: Provider refused; nothing was persisted
        """
        plan = get_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan '{plan_id}'", {"plan_id": plan_id})

        contact_email = normalize_email(email)
        op = operation or plan.default_operation
        if op not in plan.allowed_operations:
            raise ValidationError(
                f"Operation '{op.value}' is not available for the {plan.plan_id.value} plan",
                {"plan_id": plan.plan_id.value, "operation": op.value},
            )

        amount = amount_for(plan, op)
        now = self._clock()
        owner_key = owner_key_for(user_id, contact_email)

        async with self._session_factory() as session:
            existing = await PaymentSessionRepository(session).find_open(
                owner_key, plan.plan_id.value, now
            )
        if existing is not None:
            if operation is not None and existing.operation != op.value:
                raise ValidationError(
                    f"A '{existing.operation}' session is already open for the "
                    f"{plan.plan_id.value} plan",
                    {"session_id": existing.id, "operation": existing.operation},
                )
            logger.info(f"[PAYMENT] Reusing open session {existing.id} for {owner_key}")
            return self._to_response(existing, reused=True)

        session_id = new_id()
        user_key = user_id or new_anonymous_key()
        reference = build_reference(plan.plan_id, user_key, now)

        page = await self._cardcom.create_low_profile(
            session_id=session_id,
            reference=reference,
            plan=plan,
            operation=op,
            amount=amount,
            email=contact_email,
            full_name=full_name,
            phone=phone,
        )

        model = PaymentSessionModel(
            id=session_id,
            provider_session_id=page.low_profile_id,
            reference=reference,
            user_id=user_id,
            owner_key=owner_key,
            plan_id=plan.plan_id.value,
            amount=amount,
            currency=plan.currency,
            operation=op.value,
            status=SessionStatus.PENDING.value,
            contact_email=contact_email,
            contact_name=full_name,
            contact_phone=phone,
            url=page.url,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=self._settings.session_ttl_minutes),
        )
        async with self._session_factory() as session, session.begin():
            await PaymentSessionRepository(session).add(model)

        logger.info(
            f"[PAYMENT] Session {session_id} created: plan={plan.plan_id.value} "
            f"operation={op.value} lowprofile={page.low_profile_id}"
        )
        return self._to_response(model, reused=False)

    @staticmethod
    def _to_response(model: PaymentSessionModel, reused: bool) -> SessionCreatedResponse:
        session = PaymentSessionRepository.to_domain(model)
        return SessionCreatedResponse(
            session_id=session.id,
            url=session.url or "",
            provider_session_id=session.provider_session_id,
            reference=session.reference,
            operation=session.operation,
            amount=float(session.amount),
            currency=session.currency,
            expires_at=session.expires_at,
            reused=reused,
        )
