"""
Integration tests for ContractService.
"""

import pytest

from conftest import NOW, USER_ID, token_payload
from app.domain.billing_dto import SignContractRequest
from app.domain.subscription import SubscriptionStatus
from app.infrastructure.db.repositories import (
    ContractSignatureRepository,
    SubscriptionRepository,
)
from app.infrastructure.exceptions import ContractNotSigned, ValidationError


def sign_request(**overrides) -> SignContractRequest:
    fields = {
        "plan_id": "monthly",
        "full_name": "Dana Buyer",
        "email": "Buyer@Example.com",
        "phone": "050-0000000",
        "contract_html": "<h1>Subscription agreement</h1><p>Terms...</p>",
        "signature": "data:image/png;base64,iVBORw0KGgo=",
        "agreed_to_terms": True,
        "agreed_to_privacy": True,
        "browser_info": {"language": "he-IL"},
    }
    fields.update(overrides)
    return SignContractRequest(**fields)


class TestSign:

    @pytest.mark.asyncio
    async def test_sign_records_signature_and_flag(self, contracts, session_factory):
        response = await contracts.sign(USER_ID, sign_request(), "10.0.0.1", "pytest-agent")

        assert response.contract_version == "1.0"
        assert response.signed_at == NOW

        async with session_factory() as session:
            signature = await ContractSignatureRepository(session).get_latest_for_user(USER_ID)
            subscription = await SubscriptionRepository(session).get_by_user_id(USER_ID)
        assert signature.email == "buyer@example.com"
        assert signature.ip_address == "10.0.0.1"
        assert signature.contract_html.startswith("<h1>")
        assert subscription.contract_signed is True
        assert subscription.contract_signed_at == NOW

    @pytest.mark.asyncio
    async def test_signing_alone_grants_no_access(self, contracts, subscriptions):
        await contracts.sign(USER_ID, sign_request())

        status = await subscriptions.get_status(USER_ID)
        assert status.has_subscription is True
        assert status.status == SubscriptionStatus.TRIAL
        assert status.contract_signed is True
        assert status.is_active is False

    @pytest.mark.asyncio
    async def test_sign_after_card_saved_unlocks_trial(
        self, contracts, subscriptions, ingestor, add_session
    ):
        await add_session()
        await ingestor.ingest(token_payload("lp-1"))
        assert (await subscriptions.get_status(USER_ID)).requires_contract_signature is True

        await contracts.sign(USER_ID, sign_request())

        status = await subscriptions.get_status(USER_ID)
        assert status.is_active is True
        assert status.trial_days_left == 30

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides,field", [
        ({"agreed_to_terms": False}, "agreed_to_terms"),
        ({"agreed_to_privacy": False}, "agreed_to_privacy"),
        ({"signature": "   "}, "signature"),
        ({"contract_html": ""}, "contract_html"),
        ({"plan_id": "gold"}, "plan_id"),
    ])
    async def test_incomplete_request_is_rejected(self, contracts, session_factory, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            await contracts.sign(USER_ID, sign_request(**overrides))
        assert field in exc_info.value.details["fields"]

        async with session_factory() as session:
            assert await ContractSignatureRepository(session).count() == 0


class TestStatus:

    @pytest.mark.asyncio
    async def test_unsigned(self, contracts):
        status = await contracts.get_status(USER_ID)
        assert status.signed is False
        assert status.signed_at is None

        with pytest.raises(ContractNotSigned) as exc_info:
            await contracts.require_signed(USER_ID)
        assert exc_info.value.redirect_to == "/contract"

    @pytest.mark.asyncio
    async def test_signed(self, contracts):
        await contracts.sign(USER_ID, sign_request(plan_id="annual"))

        status = await contracts.get_status(USER_ID)
        assert status.signed is True
        assert status.plan_id == "annual"
        assert await contracts.is_signed(USER_ID) is True
        await contracts.require_signed(USER_ID)
