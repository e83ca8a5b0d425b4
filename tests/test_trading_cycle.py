"""DECIDE-phase pipeline: confidence filter, risk gate ordering and deferral."""

from unittest.mock import MagicMock

import pytest

from core.risk import RiskEngine
from core.trading_cycle import DecisionPipeline
from strategy.base_strategy import StrategyEvaluation
from strategy.market_analyzer import MarketAnalyzer
from tests.helpers import idle_base_snapshot, make_action, neutral_signals, utc


@pytest.fixture
def risk_engine(policy):
    engine = RiskEngine(policy, clock=lambda: utc())
    engine.update_portfolio(idle_base_snapshot())
    return engine


def _pipeline(risk_engine, actions, max_actions=5, min_confidence=40.0):
    evaluator = MagicMock()
    evaluator.evaluate.return_value = StrategyEvaluation(
        strategy_id="balanced",
        actions=tuple(actions),
        confidence=80.0,
        explanation="test",
    )
    return DecisionPipeline(evaluator, risk_engine, max_actions, min_confidence)


def _decide(pipeline):
    condition = MarketAnalyzer().analyze(neutral_signals())
    return pipeline.decide(idle_base_snapshot(), condition, [])


def test_approves_valid_action(risk_engine):
    action = make_action()
    result = _decide(_pipeline(risk_engine, [action]))

    assert result.approved == [action]
    assert len(result.verdicts) == 1
    assert result.no_action_reason is None


def test_confidence_filter_drops_before_risk_gate(risk_engine):
    risk_engine.validate = MagicMock(wraps=risk_engine.validate)
    weak = make_action(confidence=30.0)
    strong = make_action(confidence=80.0)

    result = _decide(_pipeline(risk_engine, [weak, strong]))

    assert result.filtered == [weak]
    assert result.approved == [strong]
    risk_engine.validate.assert_called_once_with(strong)


def test_everything_below_threshold(risk_engine):
    result = _decide(_pipeline(risk_engine, [make_action(confidence=10.0)]))
    assert result.approved == []
    assert result.no_action_reason == "below_confidence_threshold"


def test_max_actions_per_cycle_defers_rest(risk_engine):
    actions = [make_action(priority=p, value_usd=10.0, quantity=100_000_000) for p in (1, 2, 3)]

    result = _decide(_pipeline(risk_engine, actions, max_actions=2))

    assert result.approved == actions[:2]
    assert result.deferred == actions[2:]
    assert len(result.verdicts) == 2


def test_actions_reach_gate_in_priority_order(risk_engine):
    late = make_action(priority=3)
    early = make_action(priority=1)

    result = _decide(_pipeline(risk_engine, [late, early]))

    assert [v.action_id for v in result.verdicts] == [early.id, late.id]


def test_rejected_action_reason(risk_engine):
    result = _decide(_pipeline(risk_engine, [make_action(max_slippage_bps=900)]))

    assert result.approved == []
    assert len(result.rejected) == 1
    assert result.no_action_reason == "risk_rejected"


def test_active_breaker_rejects_every_action(risk_engine):
    risk_engine.record_loss(100.0)
    actions = [make_action(priority=p) for p in (1, 2, 3)]

    result = _decide(_pipeline(risk_engine, actions))

    assert result.halted is True
    assert result.rejected == actions
    assert result.deferred == []
    assert [v.action_id for v in result.verdicts] == [a.id for a in actions]
    assert all(v.halted and "daily limit" in v.summary for v in result.verdicts)
    assert result.no_action_reason == "circuit_breaker"


def test_active_breaker_ignores_max_actions_deferral(risk_engine):
    risk_engine.record_loss(100.0)
    actions = [make_action(priority=p) for p in (1, 2, 3)]

    result = _decide(_pipeline(risk_engine, actions, max_actions=1))

    assert len(result.verdicts) == 3
    assert result.deferred == []


def test_no_proposals(risk_engine):
    result = _decide(_pipeline(risk_engine, []))
    assert result.no_action_reason == "no_proposals"
    assert result.verdicts == []


def test_evaluation_error_is_contained(risk_engine):
    evaluator = MagicMock()
    evaluator.evaluate.side_effect = RuntimeError("bad snapshot")
    pipeline = DecisionPipeline(evaluator, risk_engine)

    result = _decide(pipeline)

    assert result.evaluation is None
    assert result.no_action_reason == "evaluation_error"
    assert "bad snapshot" in result.error
