"""
Subscription State Machine

Pure functions: every entitlement decision goes through compute_status, and
every lifecycle change is a transition that returns a new Subscription.
Nothing here performs I/O; callers persist the result.
"""

import calendar
import math
from datetime import datetime, timedelta
from typing import Optional

from app.domain.plans import PLANS
from app.domain.subscription import (
    EntitlementStatus,
    PaymentFailure,
    PaymentMethod,
    PlanType,
    Subscription,
    SubscriptionStatus,
)


GRACE_PERIOD_DAYS = 7
TRIAL_DAYS = 30

_DAY = timedelta(days=1)


class InvalidTransition(ValueError):
    """Raised when a transition is not allowed from the current state."""


def _days_left(end: datetime, now: datetime) -> int:
    return max(0, math.ceil((end - now) / _DAY))


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping to the last day of short months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_period_end(plan_type: PlanType, start: datetime) -> Optional[datetime]:
    """End of a paid period starting at ``start``; None for one-time plans."""
    interval = PLANS[plan_type].billing_interval
    if interval == "month":
        return add_months(start, 1)
    if interval == "year":
        return add_months(start, 12)
    return None


# =============================================================================
# Entitlement
# =============================================================================

def compute_status(
    subscription: Optional[Subscription],
    now: datetime,
    grace_period_days: int = GRACE_PERIOD_DAYS,
) -> EntitlementStatus:
    """
    Derive the entitlement view of a subscription at ``now``.

    An unsigned contract always denies access; the other fields are still
    filled in so the UI can show what happens after signing.
    """
    if subscription is None:
        return EntitlementStatus(reason="no_subscription")

    view = _compute_lifecycle(subscription, now, grace_period_days)
    view.status = subscription.status
    view.plan_type = subscription.plan_type

    if subscription.status == SubscriptionStatus.TRIAL and subscription.trial_ends_at:
        view.trial_days_left = _days_left(subscription.trial_ends_at, now)

    if not subscription.contract_signed:
        view.is_active = False
        view.requires_contract_signature = True
        view.reason = "contract_not_signed"

    return view


def _compute_lifecycle(
    sub: Subscription,
    now: datetime,
    grace_period_days: int,
) -> EntitlementStatus:
    if sub.status == SubscriptionStatus.EXPIRED:
        return EntitlementStatus(reason="expired")

    if sub.status == SubscriptionStatus.CANCELLED:
        end = sub.current_period_ends_at or sub.trial_ends_at
        if end is not None and now < end:
            return EntitlementStatus(
                is_active=True, access_ends_at=end, reason="cancelled_until_period_end"
            )
        return EntitlementStatus(access_ends_at=end, reason="cancelled")

    if sub.last_payment_failure is not None:
        return _compute_with_failure(sub, now, grace_period_days)

    if sub.status == SubscriptionStatus.TRIAL:
        if sub.trial_ends_at is None:
            return EntitlementStatus(reason="trial_not_started")
        if now < sub.trial_ends_at:
            return EntitlementStatus(
                is_active=True, access_ends_at=sub.trial_ends_at, reason="trial"
            )
        return EntitlementStatus(access_ends_at=sub.trial_ends_at, reason="trial_ended")

    if sub.status == SubscriptionStatus.ACTIVE:
        end = sub.current_period_ends_at
        if end is None:
            return EntitlementStatus(is_active=True, reason="lifetime")
        if now < end:
            return EntitlementStatus(is_active=True, access_ends_at=end, reason="active")
        return EntitlementStatus(access_ends_at=end, reason="period_ended")

    return EntitlementStatus(reason="payment_failed")


def _compute_with_failure(
    sub: Subscription,
    now: datetime,
    grace_period_days: int,
) -> EntitlementStatus:
    end = sub.current_period_ends_at or sub.trial_ends_at
    if end is None:
        # Lifetime plans keep access; a failure before any paid period grants nothing
        if sub.status == SubscriptionStatus.ACTIVE:
            return EntitlementStatus(
                is_active=True, requires_payment_update=True, reason="lifetime"
            )
        return EntitlementStatus(requires_payment_update=True, reason="payment_failed")

    grace_end = end + timedelta(days=grace_period_days)
    if now < grace_end:
        return EntitlementStatus(
            is_active=True,
            requires_payment_update=True,
            in_grace_period=now >= end,
            grace_period_days_remaining=_days_left(grace_end, now),
            access_ends_at=grace_end,
            reason="payment_failed_grace",
        )
    return EntitlementStatus(
        requires_payment_update=True,
        grace_period_days_remaining=0,
        access_ends_at=grace_end,
        reason="grace_period_ended",
    )


def should_expire(
    subscription: Subscription,
    now: datetime,
    grace_period_days: int = GRACE_PERIOD_DAYS,
) -> bool:
    """Whether a lapsed subscription should be persisted as expired."""
    if subscription.status == SubscriptionStatus.EXPIRED:
        return False
    if subscription.status == SubscriptionStatus.TRIAL and subscription.trial_ends_at is None:
        return False
    signed = subscription.model_copy(update={"contract_signed": True})
    view = compute_status(signed, now, grace_period_days)
    return not view.is_active and view.access_ends_at is not None


# =============================================================================
# Transitions
# =============================================================================

def _placeholder(user_id: str, plan_type: PlanType) -> Subscription:
    return Subscription(user_id=user_id, plan_type=plan_type, status=SubscriptionStatus.TRIAL)


def _merge_payment_method(
    existing: Optional[PaymentMethod],
    incoming: Optional[PaymentMethod],
) -> Optional[PaymentMethod]:
    if incoming is None:
        return existing
    if existing is None or incoming.has_token:
        return incoming
    # Charge-only results carry card details but no token; keep the stored token
    return incoming.model_copy(
        update={
            "token": existing.token,
            "token_expires_on": existing.token_expires_on,
        }
    )


def mark_contract_signed(
    subscription: Optional[Subscription],
    user_id: str,
    plan_type: PlanType,
    now: datetime,
) -> Subscription:
    base = subscription or _placeholder(user_id, plan_type)
    return base.model_copy(update={"contract_signed": True, "contract_signed_at": now})


def on_token_stored(
    subscription: Optional[Subscription],
    user_id: str,
    plan_type: PlanType,
    payment_method: PaymentMethod,
    now: datetime,
    trial_days: Optional[int] = None,
) -> Subscription:
    """
    A card was saved without charging it.

    Starts the trial for trial plans when the user never had a trial or a
    paid period; otherwise only the payment method changes. Never activates.
    """
    base = subscription or _placeholder(user_id, plan_type)
    updates: dict = {"payment_method": _merge_payment_method(base.payment_method, payment_method)}

    plan = PLANS[plan_type]
    days = plan.trial_days if trial_days is None else trial_days
    never_started = (
        base.trial_ends_at is None
        and base.current_period_ends_at is None
        and base.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)
    )
    if never_started and plan.trial_days > 0 and days > 0:
        trial_end = now + timedelta(days=days)
        updates.update(
            plan_type=plan_type,
            status=SubscriptionStatus.TRIAL,
            trial_ends_at=trial_end,
            next_charge_date=trial_end,
            last_payment_failure=None,
        )
    return base.model_copy(update=updates)


def on_payment_succeeded(
    subscription: Optional[Subscription],
    user_id: str,
    plan_type: PlanType,
    now: datetime,
    payment_method: Optional[PaymentMethod] = None,
) -> Subscription:
    """A charge went through: activate and extend the paid period."""
    base = subscription or _placeholder(user_id, plan_type)
    start = now
    if base.current_period_ends_at is not None and base.current_period_ends_at > now:
        start = base.current_period_ends_at
    period_end = next_period_end(plan_type, start)
    return base.model_copy(
        update={
            "plan_type": plan_type,
            "status": SubscriptionStatus.ACTIVE,
            "current_period_ends_at": period_end,
            "next_charge_date": period_end,
            "last_payment_failure": None,
            "cancelled_at": None,
            "cancellation_reason": None,
            "payment_method": _merge_payment_method(base.payment_method, payment_method),
        }
    )


def on_payment_failed(
    subscription: Optional[Subscription],
    user_id: str,
    plan_type: PlanType,
    reason: str,
    code: Optional[int],
    now: datetime,
) -> Subscription:
    """
    A charge was declined. The paid period is left untouched so the grace
    window runs from the original period end.
    """
    failure = PaymentFailure(reason=reason, code=code, at=now)
    if subscription is None:
        return Subscription(
            user_id=user_id,
            plan_type=plan_type,
            status=SubscriptionStatus.FAILED,
            last_payment_failure=failure,
        )

    updates: dict = {"last_payment_failure": failure}
    lifetime = (
        subscription.status == SubscriptionStatus.ACTIVE
        and subscription.current_period_ends_at is None
    )
    if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL) and not lifetime:
        updates["status"] = SubscriptionStatus.FAILED
    return subscription.model_copy(update=updates)


def cancel(
    subscription: Subscription,
    now: datetime,
    reason: Optional[str] = None,
) -> Subscription:
    """Stop renewal; access continues until the current period ends."""
    if subscription.status == SubscriptionStatus.CANCELLED:
        return subscription
    if subscription.status == SubscriptionStatus.EXPIRED:
        raise InvalidTransition("An expired subscription cannot be cancelled")
    if not PLANS[subscription.plan_type].is_recurring and subscription.status == SubscriptionStatus.ACTIVE:
        raise InvalidTransition("One-time plans have no renewal to cancel")
    return subscription.model_copy(
        update={
            "status": SubscriptionStatus.CANCELLED,
            "cancelled_at": now,
            "cancellation_reason": reason,
            "next_charge_date": None,
        }
    )


def reactivate(subscription: Subscription, now: datetime) -> Subscription:
    """Undo a cancellation while its period is still running."""
    if subscription.status != SubscriptionStatus.CANCELLED:
        raise InvalidTransition("Only cancelled subscriptions can be reactivated")

    end = subscription.current_period_ends_at or subscription.trial_ends_at
    if end is None or end <= now:
        raise InvalidTransition("The cancelled period has already ended")

    if subscription.current_period_ends_at is None:
        status = SubscriptionStatus.TRIAL
    elif subscription.last_payment_failure is not None:
        status = SubscriptionStatus.FAILED
    else:
        status = SubscriptionStatus.ACTIVE

    next_charge = end if PLANS[subscription.plan_type].is_recurring else None
    return subscription.model_copy(
        update={
            "status": status,
            "cancelled_at": None,
            "cancellation_reason": None,
            "next_charge_date": next_charge,
        }
    )


def expire(subscription: Subscription) -> Subscription:
    return subscription.model_copy(
        update={"status": SubscriptionStatus.EXPIRED, "next_charge_date": None}
    )
