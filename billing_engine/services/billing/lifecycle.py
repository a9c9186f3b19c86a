"""Subscription lifecycle state machine.

Pure status logic: methods mutate the subscription row they are handed and
never touch the session. The processor calls them inside a ledger unit of
work so the status change commits with the rest of the event's writes.
"""
from __future__ import annotations

import calendar
import enum
import logging
from datetime import datetime

from billing_engine.config import settings
from billing_engine.errors import InvalidTransition
from billing_engine.models.billing import Subscription, SubscriptionStatus
from billing_engine.models.tenant import BillingPeriod, SubscriptionPlan
from billing_engine.services.common import as_utc, utcnow

logger = logging.getLogger(__name__)

PERIOD_MONTHS = {
    BillingPeriod.monthly: 1,
    BillingPeriod.quarterly: 3,
    BillingPeriod.yearly: 12,
}

TRIAL_EXPIRY_TARGETS = {SubscriptionStatus.incomplete, SubscriptionStatus.past_due}


class Trigger(str, enum.Enum):
    first_payment = "first_payment"
    trial_elapsed = "trial_elapsed"
    payment_failed = "payment_failed"
    payment_recovered = "payment_recovered"
    period_end_cancel = "period_end_cancel"
    cancel_now = "cancel_now"
    pause = "pause"
    resume = "resume"


_NON_TERMINAL = {
    SubscriptionStatus.incomplete,
    SubscriptionStatus.trialing,
    SubscriptionStatus.active,
    SubscriptionStatus.past_due,
    SubscriptionStatus.paused,
}

# trigger -> (allowed source states, target). trial_elapsed target is policy.
TRANSITIONS: dict[Trigger, tuple[set[SubscriptionStatus], SubscriptionStatus | None]] = {
    Trigger.first_payment: (
        {SubscriptionStatus.incomplete, SubscriptionStatus.trialing},
        SubscriptionStatus.active,
    ),
    Trigger.trial_elapsed: ({SubscriptionStatus.trialing}, None),
    Trigger.payment_failed: ({SubscriptionStatus.active}, SubscriptionStatus.past_due),
    Trigger.payment_recovered: ({SubscriptionStatus.past_due}, SubscriptionStatus.active),
    Trigger.period_end_cancel: (
        {SubscriptionStatus.active, SubscriptionStatus.past_due},
        SubscriptionStatus.cancelled,
    ),
    Trigger.cancel_now: (_NON_TERMINAL, SubscriptionStatus.cancelled),
    Trigger.pause: ({SubscriptionStatus.active}, SubscriptionStatus.paused),
    Trigger.resume: ({SubscriptionStatus.paused}, SubscriptionStatus.active),
}


def add_period(value: datetime, billing_period: BillingPeriod) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    months = PERIOD_MONTHS[BillingPeriod(billing_period)]
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class SubscriptionLifecycle:
    def __init__(self, trial_expiry_status: str | None = None) -> None:
        policy = trial_expiry_status or settings.trial_expiry_status
        try:
            target = SubscriptionStatus(policy)
        except ValueError:
            target = SubscriptionStatus.incomplete
        if target not in TRIAL_EXPIRY_TARGETS:
            target = SubscriptionStatus.incomplete
        self.trial_expiry_status = target

    def next_status(
        self, subscription: Subscription, trigger: Trigger
    ) -> SubscriptionStatus:
        sources, target = TRANSITIONS[trigger]
        current = SubscriptionStatus(subscription.status)
        if target is None:
            target = self.trial_expiry_status
        if current not in sources:
            logger.warning(
                "Rejected %s on subscription %s: %s -> %s",
                trigger.value,
                subscription.id,
                current.value,
                target.value,
                extra={"tenant_id": str(subscription.tenant_id)},
            )
            raise InvalidTransition("subscription", current.value, target.value)
        return target

    def _move(self, subscription: Subscription, trigger: Trigger) -> None:
        previous = subscription.status
        subscription.status = self.next_status(subscription, trigger)
        logger.info(
            "Subscription %s: %s -> %s (%s)",
            subscription.id,
            SubscriptionStatus(previous).value,
            subscription.status.value,
            trigger.value,
            extra={"tenant_id": str(subscription.tenant_id)},
        )

    @staticmethod
    def initial_status(trial_end: datetime | None, now: datetime | None = None) -> SubscriptionStatus:
        now = now or utcnow()
        if trial_end is not None and as_utc(trial_end) > now:
            return SubscriptionStatus.trialing
        return SubscriptionStatus.incomplete

    def start(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        *,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        trial_end: datetime | None = None,
    ) -> None:
        now = utcnow()
        start = as_utc(period_start) or now
        subscription.status = self.initial_status(trial_end, now)
        subscription.current_period_start = start
        subscription.current_period_end = as_utc(period_end) or add_period(
            start, plan.billing_period
        )
        subscription.cancel_at_period_end = False
        if subscription.status == SubscriptionStatus.trialing:
            subscription.trial_start = now
            subscription.trial_end = as_utc(trial_end)

    # ── Payment-driven triggers ──────────────────────────

    def on_payment_succeeded(
        self, subscription: Subscription, plan: SubscriptionPlan
    ) -> bool:
        """Returns True when the status moved."""
        status = SubscriptionStatus(subscription.status)
        if status in (SubscriptionStatus.incomplete, SubscriptionStatus.trialing):
            self._move(subscription, Trigger.first_payment)
            return True
        if status == SubscriptionStatus.past_due:
            self._move(subscription, Trigger.payment_recovered)
            self._advance_window(subscription, plan, subscription.current_period_end)
            return True
        if status in (SubscriptionStatus.paused, SubscriptionStatus.cancelled):
            # The money still lands on the invoice; the status stays put.
            logger.warning(
                "Payment received for %s subscription %s; status unchanged",
                status.value,
                subscription.id,
                extra={"tenant_id": str(subscription.tenant_id)},
            )
        return False

    def on_payment_failed(self, subscription: Subscription) -> bool:
        if subscription.status != SubscriptionStatus.active:
            return False
        self._move(subscription, Trigger.payment_failed)
        return True

    def expire_trial(self, subscription: Subscription) -> bool:
        if subscription.status != SubscriptionStatus.trialing:
            return False
        self._move(subscription, Trigger.trial_elapsed)
        return True

    # ── Requests ─────────────────────────────────────────

    def schedule_cancel(self, subscription: Subscription, flag: bool = True) -> bool:
        if subscription.status == SubscriptionStatus.cancelled:
            return False
        if bool(subscription.cancel_at_period_end) == flag:
            return False
        subscription.cancel_at_period_end = flag
        logger.info(
            "Subscription %s cancel_at_period_end=%s",
            subscription.id,
            flag,
            extra={"tenant_id": str(subscription.tenant_id)},
        )
        return True

    def cancel_now(self, subscription: Subscription, at: datetime | None = None) -> bool:
        if subscription.status == SubscriptionStatus.cancelled:
            return False
        self._move(subscription, Trigger.cancel_now)
        subscription.cancelled_at = as_utc(at) or utcnow()
        subscription.cancel_at_period_end = False
        return True

    def pause(self, subscription: Subscription) -> bool:
        if subscription.status == SubscriptionStatus.paused:
            return False
        self._move(subscription, Trigger.pause)
        return True

    def resume(self, subscription: Subscription) -> bool:
        if subscription.status == SubscriptionStatus.active:
            return False
        self._move(subscription, Trigger.resume)
        return True

    # ── Period boundary ──────────────────────────────────

    @staticmethod
    def is_stale_boundary(subscription: Subscription, period_end: datetime | None) -> bool:
        current_end = as_utc(subscription.current_period_end)
        ended = as_utc(period_end)
        return current_end is not None and ended is not None and ended < current_end

    def rollover(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        period_end: datetime | None = None,
    ) -> bool:
        """Apply a period boundary. Returns False for stale or held boundaries."""
        current_end = as_utc(subscription.current_period_end)
        ended = as_utc(period_end) or current_end or utcnow()
        if self.is_stale_boundary(subscription, ended):
            logger.info(
                "Ignoring stale period end %s for subscription %s (current end %s)",
                ended.isoformat(),
                subscription.id,
                current_end.isoformat(),
                extra={"tenant_id": str(subscription.tenant_id)},
            )
            return False
        if subscription.cancel_at_period_end:
            self._move(subscription, Trigger.period_end_cancel)
            subscription.cancelled_at = ended
            subscription.cancel_at_period_end = False
            return True
        status = SubscriptionStatus(subscription.status)
        if status == SubscriptionStatus.cancelled:
            raise InvalidTransition("subscription", status.value, "rollover")
        if status == SubscriptionStatus.past_due:
            # Held at the boundary until the recovery payment advances it.
            logger.info(
                "Subscription %s is past_due; period window held",
                subscription.id,
                extra={"tenant_id": str(subscription.tenant_id)},
            )
            return False
        return self._advance_window(subscription, plan, ended)

    @staticmethod
    def _advance_window(
        subscription: Subscription, plan: SubscriptionPlan, start: datetime | None
    ) -> bool:
        start = as_utc(start) or utcnow()
        new_end = add_period(start, plan.billing_period)
        current_end = as_utc(subscription.current_period_end)
        if current_end is not None and new_end <= current_end:
            return False
        subscription.current_period_start = start
        subscription.current_period_end = new_end
        logger.info(
            "Subscription %s period advanced to %s",
            subscription.id,
            new_end.isoformat(),
            extra={"tenant_id": str(subscription.tenant_id)},
        )
        return True


lifecycle = SubscriptionLifecycle()
