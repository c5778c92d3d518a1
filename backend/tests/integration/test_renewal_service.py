"""
Integration tests for RenewalService: trial conversion, renewals, declines
and provider outages during the token charge batch.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, OTHER_USER_ID, USER_ID
from app.domain.provider import CardcomNotification
from app.domain.state_machine import add_months, compute_status
from app.domain.subscription import (
    PaymentFailure,
    PaymentMethod,
    PlanType,
    SessionStatus,
    Subscription,
    SubscriptionStatus,
)
from app.infrastructure.db.repositories import (
    PaymentHistoryRepository,
    PaymentSessionRepository,
    SubscriptionRepository,
    WebhookEventRepository,
)
from app.infrastructure.services.renewal_service import notification_from_charge


CARD = PaymentMethod(last4="4580", expiry_month="12", expiry_year="2028", token="tok-5f2a9c")
DUE = NOW - timedelta(hours=1)


async def seed(session_factory, user_id: str = USER_ID, **fields) -> Subscription:
    """Signed monthly trial with a saved card, due an hour ago."""
    values = {
        "plan_type": PlanType.MONTHLY,
        "status": SubscriptionStatus.TRIAL,
        "trial_ends_at": DUE,
        "next_charge_date": DUE,
        "payment_method": CARD,
        "contract_signed": True,
    }
    values.update(fields)
    async with session_factory() as session, session.begin():
        return await SubscriptionRepository(session).save(Subscription(user_id=user_id, **values))


async def load(session_factory, user_id: str = USER_ID) -> Subscription:
    async with session_factory() as session:
        return await SubscriptionRepository(session).get_by_user_id(user_id)


class TestTrialConversion:

    @pytest.mark.asyncio
    async def test_trial_is_charged_and_activated(
        self, renewals, cardcom_api, session_factory, add_profile
    ):
        await add_profile()
        await seed(session_factory)

        report = await renewals.charge_due()

        assert (report.due, report.charged, report.failed) == (1, 1, 0)
        result = report.results[0]
        assert result.outcome == "charged"
        assert result.transaction_id == "70001"
        assert result.subscription_status == SubscriptionStatus.ACTIVE

        body = cardcom_api.calls_to("/Transactions/Transaction")[0]
        assert body["Token"] == "tok-5f2a9c"
        assert body["Amount"] == 371.0
        assert body["CardExpirationMMYY"] == "1228"
        assert body["ExternalUniqTranId"] == result.session_id
        assert body["CardOwnerInformation"]["CardOwnerEmail"] == "buyer@example.com"

        subscription = await load(session_factory)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_ends_at == add_months(NOW, 1)
        assert subscription.next_charge_date == add_months(NOW, 1)
        assert subscription.payment_method.token == "tok-5f2a9c"

        async with session_factory() as session:
            payment_session = await PaymentSessionRepository(session).get_by_id(result.session_id)
            event = await WebhookEventRepository(session).get_by_id(result.event_id)
            history = await PaymentHistoryRepository(session).list_for_user(USER_ID)
        assert payment_session.status == SessionStatus.COMPLETED.value
        assert payment_session.operation == "charge_only"
        assert payment_session.reference == f"renewal-{payment_session.id}"
        assert event.source == "token_charge"
        assert event.processed is True
        assert [(row.status, float(row.amount)) for row in history] == [("completed", 371.0)]

    @pytest.mark.asyncio
    async def test_charged_subscription_is_not_due_again(self, renewals, cardcom_api, session_factory):
        await seed(session_factory)
        await renewals.charge_due()

        again = await renewals.charge_due()

        assert again.due == 0
        assert len(cardcom_api.calls_to("/Transactions/Transaction")) == 1

    @pytest.mark.asyncio
    async def test_trial_still_running_is_not_due(self, renewals, cardcom_api, session_factory):
        await seed(session_factory, trial_ends_at=NOW + timedelta(days=3), next_charge_date=NOW + timedelta(days=3))

        report = await renewals.charge_due()

        assert report.due == 0
        assert cardcom_api.calls_to("/Transactions/Transaction") == []


class TestRenewal:

    @pytest.mark.asyncio
    async def test_annual_period_is_extended(self, renewals, cardcom_api, session_factory):
        await seed(
            session_factory,
            plan_type=PlanType.ANNUAL,
            status=SubscriptionStatus.ACTIVE,
            trial_ends_at=None,
            current_period_ends_at=DUE,
        )

        report = await renewals.charge_due()

        assert report.charged == 1
        assert cardcom_api.calls_to("/Transactions/Transaction")[0]["Amount"] == 3371.0
        subscription = await load(session_factory)
        assert subscription.current_period_ends_at == add_months(NOW, 12)

    @pytest.mark.asyncio
    async def test_only_due_subscriptions_are_charged(self, renewals, cardcom_api, session_factory):
        await seed(session_factory)
        await seed(
            session_factory,
            user_id=OTHER_USER_ID,
            status=SubscriptionStatus.ACTIVE,
            trial_ends_at=None,
            current_period_ends_at=NOW + timedelta(days=10),
            next_charge_date=NOW + timedelta(days=10),
        )

        report = await renewals.charge_due()

        assert [result.user_id for result in report.results] == [USER_ID]

    @pytest.mark.asyncio
    async def test_cancelled_subscription_is_never_charged(self, renewals, cardcom_api, session_factory):
        await seed(
            session_factory,
            status=SubscriptionStatus.CANCELLED,
            cancelled_at=NOW - timedelta(days=2),
        )

        report = await renewals.charge_due()

        assert report.due == 0
        assert cardcom_api.requests == []


class TestDecline:

    @pytest.mark.asyncio
    async def test_decline_starts_grace_period(self, renewals, cardcom_api, session_factory):
        await seed(
            session_factory,
            status=SubscriptionStatus.ACTIVE,
            trial_ends_at=None,
            current_period_ends_at=DUE,
        )
        cardcom_api.declined_tokens["tok-5f2a9c"] = 5

        report = await renewals.charge_due()

        assert (report.charged, report.failed) == (0, 1)
        assert report.results[0].outcome == "failed"
        subscription = await load(session_factory)
        assert subscription.status == SubscriptionStatus.FAILED
        assert subscription.last_payment_failure.reason == "INSUFFICIENT_FUNDS"
        assert subscription.last_payment_failure.code == 5
        assert subscription.current_period_ends_at == DUE

        view = compute_status(subscription, NOW)
        assert view.is_active is True
        assert view.in_grace_period is True
        assert view.requires_payment_update is True

        async with session_factory() as session:
            history = await PaymentHistoryRepository(session).list_for_user(USER_ID)
        assert [row.status for row in history] == ["failed"]

    @pytest.mark.asyncio
    async def test_failed_subscription_is_retried_after_interval(
        self, renewals, cardcom_api, session_factory, clock, test_settings
    ):
        await seed(
            session_factory,
            status=SubscriptionStatus.ACTIVE,
            trial_ends_at=None,
            current_period_ends_at=DUE,
        )
        cardcom_api.declined_tokens["tok-5f2a9c"] = 5
        await renewals.charge_due()

        too_soon = await renewals.charge_due()
        assert too_soon.skipped == 1
        assert too_soon.results[0].message == "retry_later"
        assert len(cardcom_api.calls_to("/Transactions/Transaction")) == 1

        cardcom_api.declined_tokens.clear()
        clock.advance(hours=test_settings.renewal_retry_hours + 1)
        retried = await renewals.charge_due()

        assert retried.charged == 1
        subscription = await load(session_factory)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.last_payment_failure is None
        assert subscription.current_period_ends_at == add_months(clock(), 1)

    @pytest.mark.asyncio
    async def test_lapsed_grace_period_is_left_for_sweep(self, renewals, cardcom_api, session_factory):
        await seed(
            session_factory,
            status=SubscriptionStatus.FAILED,
            trial_ends_at=None,
            current_period_ends_at=NOW - timedelta(days=8),
            next_charge_date=NOW - timedelta(days=8),
            last_payment_failure=PaymentFailure(reason="DECLINED", code=101, at=NOW - timedelta(days=8)),
        )

        report = await renewals.charge_due()

        assert report.skipped == 1
        assert report.results[0].message == "grace_period_ended"
        assert cardcom_api.requests == []


class TestSkipped:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fields,reason", [
        ({"payment_method": None}, "no_token"),
        ({"payment_method": PaymentMethod(last4="4580")}, "no_token"),
        ({"contract_signed": False}, "contract_not_signed"),
    ])
    async def test_not_chargeable(self, renewals, cardcom_api, session_factory, fields, reason):
        await seed(session_factory, **fields)

        report = await renewals.charge_due()

        assert report.skipped == 1
        assert report.results[0].message == reason
        assert cardcom_api.requests == []


class TestProviderOutage:

    @pytest.mark.asyncio
    async def test_unconfirmed_charge_is_retried_under_same_id(
        self, renewals, cardcom_api, session_factory
    ):
        await seed(session_factory)
        cardcom_api.charge_response = httpx.ConnectError("connection reset")

        first = await renewals.charge_due()

        assert first.unresolved == 1
        assert first.results[0].outcome == "provider_error"
        subscription = await load(session_factory)
        assert subscription.status == SubscriptionStatus.TRIAL

        cardcom_api.charge_response = None
        second = await renewals.charge_due()

        assert second.charged == 1
        assert second.results[0].session_id == first.results[0].session_id
        calls = cardcom_api.calls_to("/Transactions/Transaction")
        assert [call["ExternalUniqTranId"] for call in calls] == [first.results[0].session_id] * 2
        async with session_factory() as session:
            assert await PaymentSessionRepository(session).count() == 1

    @pytest.mark.asyncio
    async def test_stored_result_is_finished_by_recovery(
        self, renewals, reconciler, recovery, cardcom_api, session_factory
    ):
        await seed(session_factory)

        broken = OperationalError("UPDATE payment_sessions", {}, Exception("connection reset"))
        with patch.object(reconciler, "_reconcile_once", new_callable=AsyncMock, side_effect=broken):
            first = await renewals.charge_due()

        assert first.results[0].outcome == "reconcile_failed"
        async with session_factory() as session:
            payment_session = await PaymentSessionRepository(session).get_by_id(first.results[0].session_id)
        assert payment_session.status == SessionStatus.PENDING.value

        # Not charged again while the stored answer waits
        waiting = await renewals.charge_due()
        assert waiting.results[0].message == "awaiting_reconcile"
        assert len(cardcom_api.calls_to("/Transactions/Transaction")) == 1

        pending = await recovery.process_pending()

        assert pending.processed == 1
        assert pending.results[0].outcome == "charged"
        subscription = await load(session_factory)
        assert subscription.status == SubscriptionStatus.ACTIVE


class TestNotificationShape:

    def test_approved_charge(self):
        body = notification_from_charge(
            {
                "ResponseCode": 0,
                "Description": "Approved",
                "TranzactionId": 70001,
                "Amount": 371.0,
                "Last4CardDigits": "4580",
                "CardMonth": 12,
                "CardYear": 2028,
            },
            "renewal-abc",
        )

        notification = CardcomNotification.model_validate(body)
        assert notification.return_value == "renewal-abc"
        assert notification.low_profile_id is None
        assert notification.transaction_id == "70001"
        assert notification.amount == 371
        assert notification.last4 == "4580"
        assert notification.effective_response_code == 0

    def test_decline_has_no_transaction_id(self):
        body = notification_from_charge(
            {"ResponseCode": 5, "Description": "Insufficient funds", "TranzactionId": 0},
            "renewal-abc",
        )

        notification = CardcomNotification.model_validate(body)
        assert notification.effective_response_code == 5
        assert notification.transaction_id is None
        assert "TranzactionId" not in body
