"""
Contract Service

Records signed subscription agreements and answers whether a user has
signed. Signing writes the immutable signature row and sets the
subscription's contract flag in one transaction.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain import state_machine
from app.domain.billing_dto import (
    ContractSignedResponse,
    ContractStatusResponse,
    SignContractRequest,
)
from app.domain.plans import get_plan
from app.domain.subscription import utc_now
from app.infrastructure.db.models.contract_signature import ContractSignatureModel
from app.infrastructure.db.repositories import (
    ContractSignatureRepository,
    SubscriptionRepository,
)
from app.infrastructure.exceptions import ContractNotSigned, ValidationError


logger = logging.getLogger(__name__)

CONTRACT_REDIRECT = "/contract"


class ContractService:
    """Contract gate."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock

    def _validate(self, request: SignContractRequest) -> None:
        problems = []
        if not request.agreed_to_terms:
            problems.append("agreed_to_terms")
        if not request.agreed_to_privacy:
            problems.append("agreed_to_privacy")
        if not request.signature or not request.signature.strip():
            problems.append("signature")
        if not request.contract_html or not request.contract_html.strip():
            problems.append("contract_html")
        if not request.full_name.strip():
            problems.append("full_name")
        if "@" not in request.email:
            problems.append("email")
        if get_plan(request.plan_id) is None:
            problems.append("plan_id")
        if problems:
            raise ValidationError(
                "The contract cannot be signed with missing or invalid fields",
                {"fields": problems},
            )

    async def sign(
        self,
        user_id: str,
        request: SignContractRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ContractSignedResponse:
        """
        Store a signature and mark the subscription as signed.

        Raises:
            ValidationError: Consent missing, empty signature or contract
        """
        self._validate(request)
        plan = get_plan(request.plan_id)
        now = self._clock()

        signature = ContractSignatureModel(
            user_id=user_id,
            plan_id=plan.plan_id.value,
            full_name=request.full_name.strip(),
            email=request.email.strip().lower(),
            phone=request.phone,
            id_number=request.id_number,
            address=request.address,
            contract_html=request.contract_html,
            contract_version=self._settings.contract_version,
            signature_image=request.signature,
            agreed_to_terms=request.agreed_to_terms,
            agreed_to_privacy=request.agreed_to_privacy,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:1024] or None,
            browser_info=request.browser_info,
            signed_at=now,
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as session, session.begin():
            await ContractSignatureRepository(session).add(signature)
            subscriptions = SubscriptionRepository(session)
            current = await subscriptions.get_by_user_id(user_id)
            await subscriptions.save(
                state_machine.mark_contract_signed(current, user_id, plan.plan_id, now)
            )

        logger.info(
            f"[CONTRACT] User {user_id} signed contract v{self._settings.contract_version} "
            f"for {plan.plan_id.value}"
        )
        return ContractSignedResponse(
            signature_id=signature.id,
            signed_at=now,
            contract_version=self._settings.contract_version,
        )

    async def get_status(self, user_id: str) -> ContractStatusResponse:
        async with self._session_factory() as session:
            latest = await ContractSignatureRepository(session).get_latest_for_user(user_id)
            subscription = await SubscriptionRepository(session).get_by_user_id(user_id)

        signed = bool(latest and subscription and subscription.contract_signed)
        return ContractStatusResponse(
            signed=signed,
            signed_at=latest.signed_at if latest else None,
            contract_version=latest.contract_version if latest else None,
            plan_id=latest.plan_id if latest else None,
        )

    async def is_signed(self, user_id: str) -> bool:
        return (await self.get_status(user_id)).signed

    async def require_signed(self, user_id: str) -> None:
        """
        Raises:
            ContractNotSigned: No signature on record for the user
        """
        if not await self.is_signed(user_id):
            raise ContractNotSigned(
                "A signed subscription agreement is required",
                redirect_to=CONTRACT_REDIRECT,
            )
