from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from billing_engine.errors import InvalidTransition
from billing_engine.models.billing import SubscriptionStatus
from billing_engine.models.tenant import BillingPeriod
from billing_engine.services.billing.lifecycle import (
    SubscriptionLifecycle,
    Trigger,
    add_period,
)
from billing_engine.services.common import as_utc

JAN_1 = datetime(2026, 1, 1, tzinfo=UTC)
FEB_1 = datetime(2026, 2, 1, tzinfo=UTC)
MAR_1 = datetime(2026, 3, 1, tzinfo=UTC)

MONTHLY = SimpleNamespace(billing_period=BillingPeriod.monthly)


def _sub(status=SubscriptionStatus.active, **kwargs):
    values = {
        "id": "sub-1",
        "tenant_id": "tenant-1",
        "status": status,
        "current_period_start": JAN_1,
        "current_period_end": FEB_1,
        "cancel_at_period_end": False,
        "cancelled_at": None,
        "trial_start": None,
        "trial_end": None,
    }
    values.update(kwargs)
    return SimpleNamespace(**values)


# ── add_period ───────────────────────────────────────────


def test_add_period_monthly():
    assert add_period(JAN_1, BillingPeriod.monthly) == FEB_1


def test_add_period_clamps_to_month_end():
    jan_31 = datetime(2026, 1, 31, tzinfo=UTC)
    assert add_period(jan_31, BillingPeriod.monthly) == datetime(2026, 2, 28, tzinfo=UTC)


def test_add_period_leap_year():
    jan_31 = datetime(2028, 1, 31, tzinfo=UTC)
    assert add_period(jan_31, BillingPeriod.monthly) == datetime(2028, 2, 29, tzinfo=UTC)


def test_add_period_quarterly_and_yearly_cross_year():
    nov_30 = datetime(2026, 11, 30, tzinfo=UTC)
    assert add_period(nov_30, BillingPeriod.quarterly) == datetime(2027, 2, 28, tzinfo=UTC)
    assert add_period(JAN_1, BillingPeriod.yearly) == datetime(2027, 1, 1, tzinfo=UTC)


# ── Transition table ─────────────────────────────────────


def test_first_payment_activates_incomplete():
    sub = _sub(SubscriptionStatus.incomplete)
    assert SubscriptionLifecycle().on_payment_succeeded(sub, MONTHLY) is True
    assert sub.status == SubscriptionStatus.active


def test_first_payment_activates_trialing():
    sub = _sub(SubscriptionStatus.trialing)
    SubscriptionLifecycle().on_payment_succeeded(sub, MONTHLY)
    assert sub.status == SubscriptionStatus.active


def test_payment_on_active_is_noop():
    sub = _sub(SubscriptionStatus.active)
    assert SubscriptionLifecycle().on_payment_succeeded(sub, MONTHLY) is False
    assert sub.status == SubscriptionStatus.active


def test_payment_recovery_advances_window():
    sub = _sub(SubscriptionStatus.past_due)
    assert SubscriptionLifecycle().on_payment_succeeded(sub, MONTHLY) is True
    assert sub.status == SubscriptionStatus.active
    assert sub.current_period_start == FEB_1
    assert sub.current_period_end == MAR_1


@pytest.mark.parametrize("status", [SubscriptionStatus.paused, SubscriptionStatus.cancelled])
def test_payment_on_paused_or_cancelled_keeps_status(status):
    sub = _sub(status)
    assert SubscriptionLifecycle().on_payment_succeeded(sub, MONTHLY) is False
    assert sub.status == status


def test_payment_failed_only_moves_active():
    lifecycle = SubscriptionLifecycle()
    active = _sub(SubscriptionStatus.active)
    assert lifecycle.on_payment_failed(active) is True
    assert active.status == SubscriptionStatus.past_due

    assert lifecycle.on_payment_failed(active) is False
    assert active.status == SubscriptionStatus.past_due

    incomplete = _sub(SubscriptionStatus.incomplete)
    assert lifecycle.on_payment_failed(incomplete) is False


def test_trial_expiry_uses_configured_policy():
    sub = _sub(SubscriptionStatus.trialing)
    SubscriptionLifecycle("past_due").expire_trial(sub)
    assert sub.status == SubscriptionStatus.past_due

    sub = _sub(SubscriptionStatus.trialing)
    SubscriptionLifecycle("incomplete").expire_trial(sub)
    assert sub.status == SubscriptionStatus.incomplete


def test_invalid_trial_policy_falls_back_to_incomplete():
    assert SubscriptionLifecycle("cancelled").trial_expiry_status == SubscriptionStatus.incomplete
    assert SubscriptionLifecycle("nonsense").trial_expiry_status == SubscriptionStatus.incomplete


def test_cancelled_is_terminal():
    lifecycle = SubscriptionLifecycle()
    sub = _sub(SubscriptionStatus.cancelled)
    for trigger in Trigger:
        if trigger == Trigger.cancel_now:
            continue
        with pytest.raises(InvalidTransition):
            lifecycle.next_status(sub, trigger)
    assert lifecycle.cancel_now(sub) is False


def test_invalid_transition_names_states():
    with pytest.raises(InvalidTransition) as exc:
        SubscriptionLifecycle().next_status(_sub(SubscriptionStatus.incomplete), Trigger.pause)
    assert exc.value.current == "incomplete"
    assert exc.value.target == "paused"


def test_pause_and_resume():
    lifecycle = SubscriptionLifecycle()
    sub = _sub(SubscriptionStatus.active)
    assert lifecycle.pause(sub) is True
    assert lifecycle.pause(sub) is False
    assert sub.status == SubscriptionStatus.paused
    assert lifecycle.resume(sub) is True
    assert lifecycle.resume(sub) is False
    assert sub.status == SubscriptionStatus.active


def test_resume_from_past_due_rejected():
    with pytest.raises(InvalidTransition):
        SubscriptionLifecycle().resume(_sub(SubscriptionStatus.past_due))


def test_cancel_now_stamps_time():
    at = datetime(2026, 1, 15, tzinfo=UTC)
    sub = _sub(SubscriptionStatus.past_due, cancel_at_period_end=True)
    assert SubscriptionLifecycle().cancel_now(sub, at) is True
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.cancelled_at == at
    assert sub.cancel_at_period_end is False


def test_schedule_cancel_is_idempotent():
    lifecycle = SubscriptionLifecycle()
    sub = _sub()
    assert lifecycle.schedule_cancel(sub, True) is True
    assert lifecycle.schedule_cancel(sub, True) is False
    assert lifecycle.schedule_cancel(sub, False) is True
    assert sub.cancel_at_period_end is False


# ── Start ────────────────────────────────────────────────


def test_initial_status_with_future_trial():
    now = datetime(2026, 1, 1, tzinfo=UTC)
    assert SubscriptionLifecycle.initial_status(now + timedelta(days=14), now) == SubscriptionStatus.trialing
    assert SubscriptionLifecycle.initial_status(now - timedelta(days=1), now) == SubscriptionStatus.incomplete
    assert SubscriptionLifecycle.initial_status(None, now) == SubscriptionStatus.incomplete


def test_start_derives_period_end_from_plan():
    sub = _sub(None, current_period_start=None, current_period_end=None)
    SubscriptionLifecycle().start(sub, MONTHLY, period_start=JAN_1)
    assert sub.status == SubscriptionStatus.incomplete
    assert sub.current_period_start == JAN_1
    assert sub.current_period_end == FEB_1


def test_start_with_trial():
    sub = _sub(None)
    trial_end = datetime.now(UTC) + timedelta(days=7)
    SubscriptionLifecycle().start(sub, MONTHLY, trial_end=trial_end)
    assert sub.status == SubscriptionStatus.trialing
    assert sub.trial_end == trial_end
    assert sub.trial_start is not None


# ── Rollover ─────────────────────────────────────────────


def test_rollover_advances_active_window():
    sub = _sub(SubscriptionStatus.active)
    assert SubscriptionLifecycle().rollover(sub, MONTHLY, FEB_1) is True
    assert sub.current_period_start == FEB_1
    assert sub.current_period_end == MAR_1


def test_rollover_cancels_when_flagged():
    sub = _sub(SubscriptionStatus.active, cancel_at_period_end=True)
    assert SubscriptionLifecycle().rollover(sub, MONTHLY, FEB_1) is True
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.cancelled_at == FEB_1
    assert sub.current_period_end == FEB_1


def test_rollover_holds_past_due_window():
    sub = _sub(SubscriptionStatus.past_due)
    assert SubscriptionLifecycle().rollover(sub, MONTHLY, FEB_1) is False
    assert sub.current_period_end == FEB_1


def test_rollover_ignores_stale_boundary():
    sub = _sub(SubscriptionStatus.active, current_period_start=FEB_1, current_period_end=MAR_1)
    assert SubscriptionLifecycle().rollover(sub, MONTHLY, FEB_1) is False
    assert sub.current_period_end == MAR_1


def test_rollover_replay_does_not_move_backward():
    lifecycle = SubscriptionLifecycle()
    sub = _sub(SubscriptionStatus.active)
    lifecycle.rollover(sub, MONTHLY, FEB_1)
    end = as_utc(sub.current_period_end)
    lifecycle.rollover(sub, MONTHLY, FEB_1)
    assert as_utc(sub.current_period_end) == end


def test_rollover_on_cancelled_raises():
    with pytest.raises(InvalidTransition):
        SubscriptionLifecycle().rollover(_sub(SubscriptionStatus.cancelled), MONTHLY, FEB_1)
