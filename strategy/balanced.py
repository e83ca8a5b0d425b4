"""
Balanced strategy: keep the portfolio on its target allocation.

Used in moderate/neutral (and low volatility) markets. Drift beyond
tolerance is corrected by the Rebalancer; when everything is within
tolerance, at most one yield-improving action is proposed.
"""

import logging
from typing import Any, Dict

from core.models import MarketCondition
from strategy.base_strategy import BaseStrategy, StrategyContext, StrategyEvaluation
from strategy.rebalancer import Rebalancer

logger = logging.getLogger(__name__)


class BalancedStrategy(BaseStrategy):

    def __init__(self, name: str = "balanced", config: Dict[str, Any] = None):
        super().__init__(name, config or {})

    def score_confidence(self, condition: MarketCondition, actionable: bool) -> float:
        confidence = 55.0
        if condition.volatility_regime == "moderate":
            confidence += 20
        if condition.trend_direction == "neutral":
            confidence += 10
        if actionable:
            confidence += 10
        return min(100.0, confidence)

    @staticmethod
    def _risk_score(condition: MarketCondition, trades: int) -> float:
        score = 35.0 + 5 * trades
        if condition.volatility_regime == "high":
            score += 10
        elif condition.volatility_regime == "extreme":
            score += 20
        if condition.trend_direction == "bearish":
            score += 5
        return min(100.0, score)

    def evaluate(self, context: StrategyContext) -> StrategyEvaluation:
        rebalancer = Rebalancer(self.config, context.assets)
        snapshot = context.snapshot
        opportunities = context.opportunities

        actions = rebalancer.plan(snapshot, opportunities)
        trades = len(actions)
        if actions:
            explanation = (
                f"Rebalancing {trades} asset(s) toward target "
                + ", ".join(f"{a}:{t:.0f}%" for a, t in rebalancer.targets.items())
            )
        else:
            improvement = rebalancer.improve_yield(snapshot, opportunities)
            if improvement is not None:
                actions = [improvement]
                explanation = f"Allocation within tolerance; {improvement.rationale}"
            else:
                explanation = (
                    f"Allocation within {rebalancer.tolerance_pct:.0f}pp tolerance; no action needed"
                )

        # expected yield of the target mix, weighted by each asset's staking/lending APY
        expected_yield = 0.0
        for asset, target in rebalancer.targets.items():
            apy = max((o.apy for o in opportunities if o.output_asset == asset), default=0.0)
            expected_yield += target / 100.0 * apy

        return StrategyEvaluation(
            strategy_id=self.name,
            actions=tuple(actions),
            confidence=self.score_confidence(context.condition, bool(actions)),
            explanation=explanation,
            expected_yield=round(expected_yield, 4),
            risk_score=self._risk_score(context.condition, trades),
        )
