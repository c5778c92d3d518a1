"""
Unit tests for the subscription state machine.

compute_status is the single entitlement decision; the transitions are
pure and return new Subscription objects.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.domain import state_machine
from app.domain.state_machine import (
    InvalidTransition,
    add_months,
    compute_status,
    next_period_end,
    should_expire,
)
from app.domain.subscription import (
    PaymentFailure,
    PaymentMethod,
    PlanType,
    Subscription,
    SubscriptionStatus,
)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
USER = "user-1"


def make_sub(**overrides) -> Subscription:
    fields = {
        "user_id": USER,
        "plan_type": PlanType.MONTHLY,
        "status": SubscriptionStatus.ACTIVE,
        "current_period_ends_at": NOW + timedelta(days=10),
        "contract_signed": True,
    }
    fields.update(overrides)
    return Subscription(**fields)


def failure(at: datetime = NOW) -> PaymentFailure:
    return PaymentFailure(reason="INSUFFICIENT_FUNDS", code=5, at=at)


class TestPeriodArithmetic:

    def test_add_months_clamps_to_month_end(self):
        jan31 = datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)
        assert add_months(jan31, 1) == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)

    def test_add_months_rolls_year(self):
        nov = datetime(2026, 11, 15, tzinfo=timezone.utc)
        assert add_months(nov, 3) == datetime(2027, 2, 15, tzinfo=timezone.utc)

    def test_next_period_end_per_plan(self):
        assert next_period_end(PlanType.MONTHLY, NOW) == datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)
        assert next_period_end(PlanType.ANNUAL, NOW) == datetime(2027, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert next_period_end(PlanType.VIP, NOW) is None


class TestComputeStatus:

    def test_no_subscription(self):
        view = compute_status(None, NOW)
        assert view.is_active is False
        assert view.reason == "no_subscription"

    def test_active_within_period(self):
        view = compute_status(make_sub(), NOW)
        assert view.is_active is True
        assert view.access_ends_at == NOW + timedelta(days=10)
        assert view.requires_payment_update is False

    def test_active_after_period_end_is_inactive(self):
        view = compute_status(make_sub(current_period_ends_at=NOW - timedelta(seconds=1)), NOW)
        assert view.is_active is False
        assert view.reason == "period_ended"

    def test_lifetime_plan_has_no_end(self):
        vip = make_sub(plan_type=PlanType.VIP, current_period_ends_at=None)
        view = compute_status(vip, NOW + timedelta(days=3650))
        assert view.is_active is True
        assert view.access_ends_at is None

    def test_trial_counts_days_left(self):
        trial = make_sub(
            status=SubscriptionStatus.TRIAL,
            current_period_ends_at=None,
            trial_ends_at=NOW + timedelta(days=29, hours=1),
        )
        view = compute_status(trial, NOW)
        assert view.is_active is True
        assert view.trial_days_left == 30

    def test_trial_without_end_grants_nothing(self):
        placeholder = make_sub(status=SubscriptionStatus.TRIAL, current_period_ends_at=None)
        view = compute_status(placeholder, NOW)
        assert view.is_active is False
        assert view.reason == "trial_not_started"

    def test_unsigned_contract_always_denies(self):
        view = compute_status(make_sub(contract_signed=False), NOW)
        assert view.is_active is False
        assert view.requires_contract_signature is True
        assert view.reason == "contract_not_signed"
        # The rest of the view is still filled in
        assert view.access_ends_at == NOW + timedelta(days=10)

    def test_expired_is_inactive(self):
        view = compute_status(make_sub(status=SubscriptionStatus.EXPIRED), NOW)
        assert view.is_active is False

    def test_cancelled_keeps_access_until_period_end(self):
        cancelled = make_sub(status=SubscriptionStatus.CANCELLED, cancelled_at=NOW)
        assert compute_status(cancelled, NOW).is_active is True
        assert compute_status(cancelled, NOW + timedelta(days=10)).is_active is False


class TestGracePeriod:
    """Failure three days before period end: grace runs to end + 7 days."""

    def sub(self) -> Subscription:
        return make_sub(
            status=SubscriptionStatus.FAILED,
            current_period_ends_at=NOW + timedelta(days=3),
            last_payment_failure=failure(),
        )

    def test_before_period_end(self):
        view = compute_status(self.sub(), NOW)
        assert view.is_active is True
        assert view.requires_payment_update is True
        assert view.in_grace_period is False
        assert view.grace_period_days_remaining == 10

    def test_inside_grace_window(self):
        view = compute_status(self.sub(), NOW + timedelta(days=5))
        assert view.is_active is True
        assert view.in_grace_period is True
        assert view.grace_period_days_remaining == 5

    def test_after_grace_window(self):
        view = compute_status(self.sub(), NOW + timedelta(days=10))
        assert view.is_active is False
        assert view.requires_payment_update is True
        assert view.grace_period_days_remaining == 0

    def test_custom_grace_length(self):
        view = compute_status(self.sub(), NOW, grace_period_days=2)
        assert view.grace_period_days_remaining == 5

    def test_failure_without_any_paid_period(self):
        sub = Subscription(
            user_id=USER,
            status=SubscriptionStatus.FAILED,
            contract_signed=True,
            last_payment_failure=failure(),
        )
        view = compute_status(sub, NOW)
        assert view.is_active is False
        assert view.requires_payment_update is True


class TestTransitions:

    def test_token_stored_starts_trial(self):
        method = PaymentMethod(last4="4580", token="tok-1")
        sub = state_machine.on_token_stored(None, USER, PlanType.MONTHLY, method, NOW)
        assert sub.status == SubscriptionStatus.TRIAL
        assert sub.trial_ends_at == NOW + timedelta(days=30)
        assert sub.next_charge_date == sub.trial_ends_at
        assert sub.payment_method.token == "tok-1"
        assert sub.contract_signed is False

    def test_token_stored_keeps_contract_flag(self):
        signed = state_machine.mark_contract_signed(None, USER, PlanType.MONTHLY, NOW)
        sub = state_machine.on_token_stored(
            signed, USER, PlanType.MONTHLY, PaymentMethod(token="tok-1"), NOW
        )
        assert sub.contract_signed is True
        assert sub.contract_signed_at == NOW

    def test_token_stored_never_restarts_trial(self):
        active = make_sub()
        sub = state_machine.on_token_stored(
            active, USER, PlanType.MONTHLY, PaymentMethod(token="tok-new"), NOW
        )
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.trial_ends_at is None
        assert sub.payment_method.token == "tok-new"

    def test_payment_succeeded_extends_from_period_end(self):
        sub = state_machine.on_payment_succeeded(make_sub(), USER, PlanType.MONTHLY, NOW)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_ends_at == add_months(NOW + timedelta(days=10), 1)

    def test_payment_succeeded_clears_failure(self):
        failed = make_sub(status=SubscriptionStatus.FAILED, last_payment_failure=failure())
        sub = state_machine.on_payment_succeeded(failed, USER, PlanType.MONTHLY, NOW)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.last_payment_failure is None

    def test_charge_without_token_keeps_stored_token(self):
        stored = make_sub(payment_method=PaymentMethod(last4="1111", token="tok-old"))
        sub = state_machine.on_payment_succeeded(
            stored, USER, PlanType.MONTHLY, NOW, PaymentMethod(last4="2222")
        )
        assert sub.payment_method.last4 == "2222"
        assert sub.payment_method.token == "tok-old"

    def test_payment_failed_keeps_period_end(self):
        active = make_sub()
        sub = state_machine.on_payment_failed(active, USER, PlanType.MONTHLY, "DECLINED", 101, NOW)
        assert sub.status == SubscriptionStatus.FAILED
        assert sub.current_period_ends_at == active.current_period_ends_at
        assert sub.last_payment_failure.code == 101

    def test_payment_failed_on_lifetime_plan_stays_active(self):
        vip = make_sub(plan_type=PlanType.VIP, current_period_ends_at=None)
        sub = state_machine.on_payment_failed(vip, USER, PlanType.VIP, "DECLINED", 101, NOW)
        assert sub.status == SubscriptionStatus.ACTIVE

    def test_cancel_is_idempotent(self):
        once = state_machine.cancel(make_sub(), NOW, "too expensive")
        twice = state_machine.cancel(once, NOW + timedelta(days=1))
        assert twice.cancelled_at == NOW
        assert twice.cancellation_reason == "too expensive"
        assert twice.next_charge_date is None

    def test_cancel_rejects_expired_and_lifetime(self):
        with pytest.raises(InvalidTransition):
            state_machine.cancel(make_sub(status=SubscriptionStatus.EXPIRED), NOW)
        with pytest.raises(InvalidTransition):
            state_machine.cancel(make_sub(plan_type=PlanType.VIP, current_period_ends_at=None), NOW)

    def test_reactivate_restores_active(self):
        cancelled = state_machine.cancel(make_sub(), NOW)
        sub = state_machine.reactivate(cancelled, NOW + timedelta(days=1))
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.cancelled_at is None
        assert sub.next_charge_date == cancelled.current_period_ends_at

    def test_reactivate_after_period_end_fails(self):
        cancelled = state_machine.cancel(make_sub(), NOW)
        with pytest.raises(InvalidTransition):
            state_machine.reactivate(cancelled, NOW + timedelta(days=11))

    def test_reactivate_requires_cancelled(self):
        with pytest.raises(InvalidTransition):
            state_machine.reactivate(make_sub(), NOW)


class TestShouldExpire:

    def test_lapsed_period_expires(self):
        sub = make_sub(current_period_ends_at=NOW - timedelta(days=1))
        assert should_expire(sub, NOW) is True

    def test_grace_window_delays_expiry(self):
        sub = make_sub(
            status=SubscriptionStatus.FAILED,
            current_period_ends_at=NOW - timedelta(days=1),
            last_payment_failure=failure(),
        )
        assert should_expire(sub, NOW) is False
        assert should_expire(sub, NOW + timedelta(days=7)) is True

    def test_placeholder_and_lifetime_never_expire(self):
        placeholder = make_sub(status=SubscriptionStatus.TRIAL, current_period_ends_at=None)
        vip = make_sub(plan_type=PlanType.VIP, current_period_ends_at=None)
        assert should_expire(placeholder, NOW) is False
        assert should_expire(vip, NOW + timedelta(days=5000)) is False

    def test_unsigned_contract_does_not_trigger_expiry(self):
        assert should_expire(make_sub(contract_signed=False), NOW) is False
