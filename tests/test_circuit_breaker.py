from datetime import timedelta

import pytest

from core.circuit_breaker import CircuitBreaker
from core.models import STATUS_CONFIRMED, ExecutionOutcome
from tests.helpers import utc


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _ok(action_id="a"):
    return ExecutionOutcome(action_id=action_id, success=True, status=STATUS_CONFIRMED, signature="sig")


def _fail(action_id="a"):
    return ExecutionOutcome.failed(action_id, "simulation failed")


@pytest.fixture
def clock():
    return Clock(utc(2025, 3, 10, 9))


@pytest.fixture
def breaker(clock):
    cb = CircuitBreaker(max_daily_loss_pct=5.0, max_consecutive_failures=3, clock=clock)
    cb.update_baseline(1000.0)
    return cb


def test_baseline_captured_once_per_day(breaker):
    breaker.update_baseline(1500.0)
    assert breaker.state().start_of_day_value_usd == 1000.0


def test_loss_below_limit_does_not_trip(breaker):
    assert breaker.record_loss(49.0) is False
    assert breaker.state().daily_loss_usd == pytest.approx(49.0)


def test_loss_at_limit_trips(breaker, clock):
    assert breaker.record_loss(50.0) is True
    state = breaker.state()
    assert state.active is True
    assert state.activated_at == clock.now
    assert state.activation_date == "2025-03-10"
    assert "daily loss" in state.reason


def test_non_positive_loss_is_ignored(breaker):
    breaker.record_loss(-10.0)
    breaker.record_loss(0.0)
    assert breaker.state().daily_loss_usd == 0.0


def test_stays_active_for_rest_of_day(breaker, clock):
    breaker.record_loss(80.0)
    clock.advance(hours=14)          # 23:00 same UTC day
    assert breaker.is_active() is True


def test_clears_on_next_utc_day(breaker, clock):
    breaker.record_loss(80.0)
    clock.advance(hours=15)          # 00:00 next day

    state = breaker.state()
    assert state.active is False
    assert state.day == "2025-03-11"
    assert state.daily_loss_usd == 0.0
    assert state.start_of_day_value_usd == 0.0

    breaker.update_baseline(900.0)
    assert breaker.state().start_of_day_value_usd == 900.0


def test_consecutive_failures_trip(breaker):
    assert breaker.record_outcomes([_fail(), _fail()]) is False
    assert breaker.record_outcomes([_fail()]) is True
    assert "consecutive execution failures" in breaker.state().reason


def test_success_resets_failure_streak(breaker):
    breaker.record_outcomes([_fail(), _fail(), _ok(), _fail()])
    state = breaker.state()
    assert state.active is False
    assert state.consecutive_failures == 1
    assert state.failed_executions == 3


def test_value_drop_counts_as_loss(breaker):
    assert breaker.record_outcomes([_ok()], pre_value_usd=1000.0, post_value_usd=960.0) is False
    assert breaker.record_outcomes([_ok()], pre_value_usd=960.0, post_value_usd=945.0) is True
    assert breaker.state().daily_loss_usd == pytest.approx(55.0)


def test_value_gain_is_not_a_negative_loss(breaker):
    breaker.record_outcomes([], pre_value_usd=1000.0, post_value_usd=1100.0)
    assert breaker.state().daily_loss_usd == 0.0


def test_missing_post_value_skips_loss_tracking(breaker):
    breaker.record_outcomes([_ok()], pre_value_usd=1000.0, post_value_usd=None)
    assert breaker.state().daily_loss_usd == 0.0


def test_manual_reset(breaker):
    breaker.record_loss(80.0)
    breaker.reset(new_baseline_usd=920.0)

    state = breaker.state()
    assert state.active is False
    assert state.daily_loss_usd == 0.0
    assert state.start_of_day_value_usd == 920.0


def test_state_is_a_copy(breaker):
    state = breaker.state()
    state.active = True
    state.daily_loss_usd = 999.0
    assert breaker.is_active() is False
    assert breaker.state().daily_loss_usd == 0.0


def test_from_config(policy):
    cb = CircuitBreaker.from_config(policy)
    assert cb.max_daily_loss_pct == 5.0
    assert cb.max_consecutive_failures == 5
