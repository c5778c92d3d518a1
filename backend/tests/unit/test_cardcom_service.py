"""
Unit tests for the Cardcom LowProfile client.

The API is replaced by httpx.MockTransport; the tests check the request we
send and how provider failures are mapped.
"""

from decimal import Decimal

import httpx
import pytest

from app.config.settings import Settings
from app.domain.plans import PLANS
from app.domain.subscription import PaymentOperation, PlanType
from app.infrastructure.exceptions import (
    ConfigurationError,
    ProviderRejected,
    ProviderUnavailable,
)
from app.infrastructure.payments.cardcom_service import CardcomService, card_expiry_mmyy


def create_kwargs(operation=PaymentOperation.CHARGE_AND_CREATE_TOKEN, plan=PlanType.ANNUAL, amount="3371"):
    return dict(
        session_id="sess-1",
        reference="annual.user-1.1700000000000",
        plan=PLANS[plan],
        operation=operation,
        amount=Decimal(amount),
        email="buyer@example.com",
        full_name="Dana Buyer",
        phone="050-0000000",
    )


class TestCreateLowProfile:

    @pytest.mark.asyncio
    async def test_request_body(self, cardcom, cardcom_api):
        page = await cardcom.create_low_profile(**create_kwargs())

        assert page.low_profile_id == "lp-created-1"
        body = cardcom_api.calls_to("/LowProfile/Create")[0]
        assert body["TerminalNumber"] == 1000
        assert body["ApiName"] == "test-api-name"
        assert body["Operation"] == "ChargeAndCreateToken"
        assert body["ReturnValue"] == "annual.user-1.1700000000000"
        assert body["Amount"] == 3371.0
        assert body["WebHookUrl"] == "https://api.example.com/api/webhooks/cardcom"
        assert body["SuccessRedirectUrl"] == "http://localhost:5173/payment/success?session_id=sess-1"
        assert body["FailedRedirectUrl"] == "http://localhost:5173/payment/failed?session_id=sess-1"
        assert body["MaxNumOfPayments"] == 12
        assert body["AdvancedDefinition"]["JValidateType"] == 5
        assert body["UIDefinition"]["CardOwnerEmailValue"] == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_token_only_page(self, cardcom, cardcom_api):
        await cardcom.create_low_profile(
            **create_kwargs(PaymentOperation.CREATE_TOKEN_ONLY, PlanType.MONTHLY, "0")
        )

        body = cardcom_api.calls_to("/LowProfile/Create")[0]
        assert body["Operation"] == "CreateTokenOnly"
        assert body["Amount"] == 0.0
        assert body["MaxNumOfPayments"] == 1
        assert body["AdvancedDefinition"]["JValidateType"] == 2

    @pytest.mark.asyncio
    async def test_non_zero_response_code_is_rejected(self, cardcom, cardcom_api):
        cardcom_api.create_response = httpx.Response(
            200, json={"ResponseCode": 5033, "Description": "Invalid terminal"}
        )

        with pytest.raises(ProviderRejected) as exc_info:
            await cardcom.create_low_profile(**create_kwargs())
        assert exc_info.value.response_code == 5033
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_missing_url_is_rejected(self, cardcom, cardcom_api):
        cardcom_api.create_response = httpx.Response(200, json={"ResponseCode": 0, "LowProfileId": "lp-x"})

        with pytest.raises(ProviderRejected):
            await cardcom.create_low_profile(**create_kwargs())

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, cardcom, cardcom_api):
        cardcom_api.create_response = httpx.Response(503, text="maintenance")

        with pytest.raises(ProviderUnavailable) as exc_info:
            await cardcom.create_low_profile(**create_kwargs())
        assert exc_info.value.details["retryable"] is True

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self, cardcom, cardcom_api):
        cardcom_api.create_response = httpx.ReadTimeout("too slow")

        with pytest.raises(ProviderUnavailable):
            await cardcom.create_low_profile(**create_kwargs())

    @pytest.mark.asyncio
    async def test_client_error_is_rejected(self, cardcom, cardcom_api):
        cardcom_api.create_response = httpx.Response(401, json={"Description": "unauthorized"})

        with pytest.raises(ProviderRejected):
            await cardcom.create_low_profile(**create_kwargs())

    @pytest.mark.asyncio
    async def test_missing_credentials(self, cardcom_api):
        settings = Settings(cardcom_terminal_number=None, cardcom_api_name=None, _env_file=None)
        async with httpx.AsyncClient(transport=httpx.MockTransport(cardcom_api.handler)) as client:
            service = CardcomService(settings=settings, client=client)
            with pytest.raises(ConfigurationError):
                await service.create_low_profile(**create_kwargs())
        assert cardcom_api.requests == []


class TestGetLowProfileResult:

    @pytest.mark.asyncio
    async def test_returns_raw_result(self, cardcom, cardcom_api):
        cardcom_api.results["lp-9"] = {"ResponseCode": 0, "LowProfileId": "lp-9"}

        result = await cardcom.get_low_profile_result("lp-9")

        assert result == {"ResponseCode": 0, "LowProfileId": "lp-9"}
        assert cardcom_api.calls_to("/LowProfile/GetLpResult")[0]["LowProfileId"] == "lp-9"

    @pytest.mark.asyncio
    async def test_pending_page_is_returned_as_is(self, cardcom):
        result = await cardcom.get_low_profile_result("lp-unknown")
        assert result["ResponseCode"] == 700


class TestChargeToken:

    @pytest.mark.asyncio
    async def test_request_body(self, cardcom, cardcom_api):
        result = await cardcom.charge_token(
            token="tok-5f2a9c",
            amount=Decimal("371"),
            unique_id="sess-renew-1",
            card_month="1",
            card_year="2029",
            email="buyer@example.com",
        )

        assert result["ResponseCode"] == 0
        assert result["TranzactionId"] == 70001
        body = cardcom_api.calls_to("/Transactions/Transaction")[0]
        assert body["TerminalNumber"] == 1000
        assert body["Token"] == "tok-5f2a9c"
        assert body["Amount"] == 371.0
        assert body["ExternalUniqTranId"] == "sess-renew-1"
        assert body["CardExpirationMMYY"] == "0129"
        assert body["NumOfPayments"] == 1
        assert body["CardOwnerInformation"]["CardOwnerEmail"] == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_unknown_expiry_is_left_out(self, cardcom, cardcom_api):
        await cardcom.charge_token(token="tok-1", amount=Decimal("371"), unique_id="sess-2")

        body = cardcom_api.calls_to("/Transactions/Transaction")[0]
        assert "CardExpirationMMYY" not in body
        assert "CardOwnerInformation" not in body

    @pytest.mark.asyncio
    async def test_decline_is_returned(self, cardcom, cardcom_api):
        cardcom_api.declined_tokens["tok-1"] = 5

        result = await cardcom.charge_token(token="tok-1", amount=Decimal("371"), unique_id="sess-3")

        assert result["ResponseCode"] == 5

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, cardcom, cardcom_api):
        cardcom_api.charge_response = httpx.Response(503, text="maintenance")

        with pytest.raises(ProviderUnavailable) as exc_info:
            await cardcom.charge_token(token="tok-1", amount=Decimal("371"), unique_id="sess-4")
        assert exc_info.value.details["operation"] == "charge_token"

    @pytest.mark.parametrize("month,year,expected", [
        ("12", "2028", "1228"),
        ("1", "29", "0129"),
        (None, "2028", None),
        ("12", "", None),
    ])
    def test_card_expiry_mmyy(self, month, year, expected):
        assert card_expiry_mmyy(month, year) == expected
