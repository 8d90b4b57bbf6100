"""Subscription lifecycle manager.

Pure functions over ``Subscription``: each returns an updated copy or
raises ``InvalidTransition``. Billing dates are calendar dates; month and
year steps clamp to the last day of the target month (Jan 31 + 1 month is
Feb 28/29).
"""

import calendar
import datetime as dt
from typing import Any, Optional

from paycore.models.enums import BillingInterval, SubscriptionStatus
from paycore.models.errors import InvalidTransition
from paycore.models.subscription import Subscription, SubscriptionUpdate

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.PENDING: frozenset({S.TRIAL, S.ACTIVE, S.FAILED}),
    S.TRIAL: frozenset(
        {S.ACTIVE, S.SUSPENDED, S.CANCELED, S.EXPIRED, S.TERMINATED, S.FAILED}
    ),
    S.ACTIVE: frozenset({S.SUSPENDED, S.CANCELED, S.EXPIRED, S.TERMINATED, S.FAILED}),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELED, S.EXPIRED, S.TERMINATED}),
    S.CANCELED: frozenset(),
    S.EXPIRED: frozenset(),
    S.TERMINATED: frozenset(),
    S.FAILED: frozenset(),
}


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _transition(
    sub: Subscription,
    target: SubscriptionStatus,
    event: str,
    now: dt.datetime | None,
    **changes: Any,
) -> Subscription:
    if target not in ALLOWED_TRANSITIONS[sub.status]:
        raise InvalidTransition("Subscription", sub.status.value, event)
    return sub.model_copy(
        update={"status": target, "updated_at": now or _utcnow(), **changes}
    )


def add_months(day: dt.date, months: int) -> dt.date:
    """Add calendar months, clamping to the end of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return dt.date(year, month, min(day.day, last_day))


def add_interval(day: dt.date, interval: BillingInterval, count: int = 1) -> dt.date:
    """Advance ``day`` by ``count`` billing intervals."""
    if interval is BillingInterval.DAILY:
        return day + dt.timedelta(days=count)
    if interval is BillingInterval.WEEKLY:
        return day + dt.timedelta(days=7 * count)
    if interval is BillingInterval.MONTHLY:
        return add_months(day, count)
    if interval is BillingInterval.YEARLY:
        return add_months(day, 12 * count)
    raise ValueError(f"Unsupported billing interval: {interval}")


def can_update(sub: Subscription) -> bool:
    return sub.status in (S.ACTIVE, S.SUSPENDED)


def can_cancel(sub: Subscription) -> bool:
    return sub.status in (S.ACTIVE, S.SUSPENDED, S.TRIAL)


def can_reactivate(sub: Subscription) -> bool:
    return sub.status is S.SUSPENDED


def activate(
    sub: Subscription,
    gateway_subscription_id: str,
    customer_profile_id: Optional[str] = None,
    payment_profile_id: Optional[str] = None,
    now: dt.datetime | None = None,
) -> Subscription:
    """PENDING -> TRIAL (trial_days > 0) or ACTIVE after gateway enrollment."""
    if sub.trial_days > 0:
        target = S.TRIAL
        trial_end = sub.start_date + dt.timedelta(days=sub.trial_days)
        next_billing = trial_end
    else:
        target = S.ACTIVE
        trial_end = None
        next_billing = sub.start_date
    return _transition(
        sub,
        target,
        "activate",
        now,
        gateway_subscription_id=gateway_subscription_id,
        gateway_customer_profile_id=customer_profile_id,
        gateway_payment_profile_id=payment_profile_id,
        trial_end_date=trial_end,
        next_billing_date=next_billing,
    )


def update(
    sub: Subscription,
    changes: SubscriptionUpdate,
    now: dt.datetime | None = None,
) -> Subscription:
    """Apply only the fields present in ``changes``; status is unchanged."""
    if not can_update(sub):
        raise InvalidTransition("Subscription", sub.status.value, "update")
    fields = changes.present_fields()
    amount = fields.get("amount")
    if amount is not None and (
        amount.currency != sub.amount.currency or not amount.is_positive()
    ):
        raise InvalidTransition("Subscription", sub.status.value, f"update(amount {amount})")
    total_cycles = fields.get("total_cycles")
    if total_cycles is not None and total_cycles < sub.completed_cycles:
        raise InvalidTransition(
            "Subscription", sub.status.value, f"update(total_cycles {total_cycles})"
        )
    if not fields:
        return sub
    return sub.model_copy(update={**fields, "updated_at": now or _utcnow()})


def cancel(
    sub: Subscription,
    today: dt.date | None = None,
    now: dt.datetime | None = None,
) -> Subscription:
    """Cancel and close the agreement as of ``today``."""
    if not can_cancel(sub):
        raise InvalidTransition("Subscription", sub.status.value, "cancel")
    now = now or _utcnow()
    return _transition(
        sub, S.CANCELED, "cancel", now, end_date=today or now.date()
    )


def suspend(sub: Subscription, now: dt.datetime | None = None) -> Subscription:
    if sub.status not in (S.ACTIVE, S.TRIAL):
        raise InvalidTransition("Subscription", sub.status.value, "suspend")
    return _transition(sub, S.SUSPENDED, "suspend", now)


def reactivate(sub: Subscription, now: dt.datetime | None = None) -> Subscription:
    if not can_reactivate(sub):
        raise InvalidTransition("Subscription", sub.status.value, "reactivate")
    return _transition(sub, S.ACTIVE, "reactivate", now)


def terminate(sub: Subscription, now: dt.datetime | None = None) -> Subscription:
    """Gateway-initiated termination; allowed from any live state."""
    now = now or _utcnow()
    return _transition(sub, S.TERMINATED, "terminate", now, end_date=now.date())


def expire(sub: Subscription, now: dt.datetime | None = None) -> Subscription:
    now = now or _utcnow()
    return _transition(
        sub, S.EXPIRED, "expire", now, end_date=sub.end_date or now.date()
    )


def fail(
    sub: Subscription, code: str, now: dt.datetime | None = None
) -> Subscription:
    """Record a failed enrollment or a gateway-reported failure."""
    return _transition(sub, S.FAILED, "fail", now, error_code=code)


def record_cycle_success(
    sub: Subscription, billed_on: dt.date, now: dt.datetime | None = None
) -> Subscription:
    """Account for one successful billing cycle.

    Advances ``next_billing_date`` by one interval from the scheduled date
    (or ``billed_on`` if none), moves TRIAL to ACTIVE, and expires the
    subscription once ``total_cycles`` have been billed.
    """
    if sub.status not in (S.TRIAL, S.ACTIVE):
        raise InvalidTransition("Subscription", sub.status.value, "cycle_success")
    now = now or _utcnow()
    completed = sub.completed_cycles + 1
    anchor = sub.next_billing_date or billed_on
    changes = {
        "completed_cycles": completed,
        "last_billing_date": billed_on,
        "next_billing_date": add_interval(
            anchor, sub.billing_interval, sub.interval_count
        ),
        "updated_at": now,
    }
    if sub.total_cycles is not None and completed >= sub.total_cycles:
        changes["next_billing_date"] = None
        return _transition(
            sub, S.EXPIRED, "cycle_success", now, end_date=billed_on, **changes
        )
    if sub.status is S.TRIAL:
        return _transition(sub, S.ACTIVE, "cycle_success", now, **changes)
    return sub.model_copy(update=changes)


def record_cycle_failure(
    sub: Subscription, now: dt.datetime | None = None
) -> Subscription:
    if sub.status.is_terminal():
        raise InvalidTransition("Subscription", sub.status.value, "cycle_failure")
    return sub.model_copy(
        update={
            "failed_cycles": sub.failed_cycles + 1,
            "updated_at": now or _utcnow(),
        }
    )
