"""
Tests for the risk gate: the five hard checks, the circuit breaker
short-circuit and runtime limit updates.
"""

import pytest

from core.models import VenuePosition
from core.risk import (
    CHECK_DAILY_LOSS,
    CHECK_POSITION_SIZE,
    CHECK_RESERVE,
    CHECK_SLIPPAGE,
    CHECK_VENUE_EXPOSURE,
    RiskEngine,
    RiskLimits,
)
from tests.helpers import SnapshotBuilder, idle_base_snapshot, make_action, utc


@pytest.fixture
def engine(policy):
    eng = RiskEngine(policy, clock=lambda: utc())
    eng.update_portfolio(idle_base_snapshot())   # $1000: 8 SOL + 200 USDC
    return eng


def _failed(verdict):
    return {c.name for c in verdict.failed_checks}


class TestChecks:
    def test_small_stake_passes_all_five_checks(self, engine):
        verdict = engine.validate(make_action())

        assert verdict.approved is True
        assert [c.name for c in verdict.checks] == [
            CHECK_POSITION_SIZE, CHECK_SLIPPAGE, CHECK_RESERVE, CHECK_VENUE_EXPOSURE, CHECK_DAILY_LOSS,
        ]
        assert verdict.summary == "approved: 5/5 checks passed"
        assert verdict.halted is False

    def test_position_size_over_limit(self, engine):
        verdict = engine.validate(make_action(value_usd=300.0, quantity=3_000_000_000))

        assert verdict.approved is False
        assert _failed(verdict) == {CHECK_POSITION_SIZE}
        check = verdict.failed_checks[0]
        assert check.value == pytest.approx(30.0)
        assert check.limit == 25.0
        assert "position size" in verdict.summary

    def test_slippage_over_limit(self, engine):
        verdict = engine.validate(make_action(max_slippage_bps=150))
        assert _failed(verdict) == {CHECK_SLIPPAGE}

    def test_reserve_counts_fee(self, engine):
        # 8 - 7.96 - 0.001 fee leaves 0.039 SOL < 0.05 reserve
        verdict = engine.validate(make_action(quantity=7_960_000_000, value_usd=100.0))

        assert CHECK_RESERVE in _failed(verdict)
        reserve = next(c for c in verdict.checks if c.name == CHECK_RESERVE)
        assert reserve.value == pytest.approx(0.039)

    def test_reserve_ignores_non_base_input(self, engine):
        verdict = engine.validate(make_action(
            kind="lend", venue="jupiter", input_asset="USDC", output_asset="jlUSDC",
            quantity=100_000_000, value_usd=100.0,
        ))
        assert verdict.approved is True

    def test_venue_exposure_includes_existing_positions(self, engine):
        engine.update_positions([
            VenuePosition(venue="marinade", asset="mSOL", quantity=4_000_000_000, value_usd=450.0),
            VenuePosition(venue="kamino", asset="kUSDC", quantity=1, value_usd=400.0),
        ])

        verdict = engine.validate(make_action(value_usd=100.0))

        assert _failed(verdict) == {CHECK_VENUE_EXPOSURE}
        exposure = verdict.failed_checks[0]
        assert exposure.value == pytest.approx(55.0)

    def test_daily_loss_projects_expected_loss(self, engine):
        engine.record_loss(40.0)          # 4% of the $1000 baseline
        assert engine.validate(make_action()).approved is True

        verdict = engine.validate(make_action(expected_value_change_usd=-20.0))

        assert _failed(verdict) == {CHECK_DAILY_LOSS}
        assert verdict.failed_checks[0].value == pytest.approx(6.0)

    def test_all_failures_are_reported(self, engine):
        verdict = engine.validate(make_action(
            quantity=7_960_000_000, value_usd=796.0, max_slippage_bps=500,
        ))
        assert {CHECK_POSITION_SIZE, CHECK_SLIPPAGE, CHECK_RESERVE, CHECK_VENUE_EXPOSURE} <= _failed(verdict)
        assert verdict.risk_score >= 100.0

    def test_tiny_portfolio_skips_value_checks(self, policy):
        eng = RiskEngine(policy, clock=lambda: utc())
        eng.update_portfolio(SnapshotBuilder().with_holding("SOL", 0.5, price=1.0).build())

        verdict = eng.validate(make_action(quantity=100_000_000, value_usd=0.1))

        assert verdict.approved is True
        size = next(c for c in verdict.checks if c.name == CHECK_POSITION_SIZE)
        assert "skipped" in size.message

    def test_risk_score_in_range(self, engine):
        verdict = engine.validate(make_action())
        assert 0.0 <= verdict.risk_score <= 100.0


class TestCircuitBreakerGate:
    def test_active_breaker_halts_every_action(self, engine):
        assert engine.record_loss(60.0) is True

        for action in (make_action(), make_action(kind="swap", venue="jupiter", input_asset="USDC",
                                                  output_asset="SOL", quantity=10_000_000, value_usd=10.0)):
            verdict = engine.validate(action)
            assert verdict.approved is False
            assert verdict.halted is True
            assert verdict.checks == []
            assert "daily limit" in verdict.summary
            assert verdict.risk_score == 100.0

    def test_reset_reopens_gate(self, engine):
        engine.record_loss(60.0)
        engine.reset_circuit_breaker()

        assert engine.validate(make_action()).approved is True
        assert engine.circuit_snapshot()["start_of_day_value_usd"] == pytest.approx(1000.0)

    def test_cycle_outcomes_trip_on_value_drop(self, engine):
        assert engine.record_cycle_outcomes([], pre_value_usd=1000.0, post_value_usd=940.0) is True
        assert engine.validate(make_action()).halted is True


class TestLimits:
    def test_from_config_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            RiskLimits.from_config({"max_slippage_bps": 0})
        with pytest.raises(ValueError):
            RiskLimits.from_config({"max_position_size_pct": 150})
        with pytest.raises(ValueError):
            RiskLimits.from_config({"min_reserve": 0.0001})

    def test_update_limits_applies_valid_values(self, engine):
        engine.update_limits(max_position_size_pct=35, max_daily_loss_pct=10)

        assert engine.limits.max_position_size_pct == 35
        assert engine.breaker.max_daily_loss_pct == 10.0
        assert engine.validate(make_action(value_usd=300.0, quantity=3_000_000_000)).approved is True

    def test_update_limits_invalid_keeps_previous(self, engine):
        before = engine.limits
        with pytest.raises(ValueError):
            engine.update_limits(max_protocol_exposure_pct=5)
        assert engine.limits == before

    def test_update_limits_unknown_name(self, engine):
        with pytest.raises(ValueError, match="unknown risk limit"):
            engine.update_limits(max_leverage=3)

    def test_risk_snapshot_shape(self, engine):
        snap = engine.risk_snapshot()
        assert snap["portfolio_value_usd"] == pytest.approx(1000.0)
        assert snap["limits"]["max_slippage_bps"] == 100
        assert snap["circuit"]["active"] is False
