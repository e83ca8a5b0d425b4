"""
Strategy evaluator: the DECIDE-phase entry point for strategy output.

evaluate() is pure. Its only inputs besides its arguments are the immutable
registry and asset settings it was built with; action ids and timestamps are
the only non-deterministic fields of the result.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from core.models import MarketCondition, PortfolioSnapshot, YieldOpportunity
from strategy.base_strategy import AssetSettings, StrategyContext, StrategyEvaluation
from strategy.registry import StrategyRegistry

logger = logging.getLogger(__name__)


class StrategyEvaluator:

    def __init__(self, registry: Optional[StrategyRegistry] = None,
                 assets: Optional[AssetSettings] = None):
        self.registry = registry or StrategyRegistry()
        self.assets = assets or AssetSettings()

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "StrategyEvaluator":
        return cls(
            registry=StrategyRegistry(policy.get("strategies")),
            assets=AssetSettings.from_policy(policy),
        )

    def evaluate(self,
                 snapshot: PortfolioSnapshot,
                 condition: MarketCondition,
                 opportunities: Sequence[YieldOpportunity] = ()) -> StrategyEvaluation:
        strategy = self.registry.select(condition)
        if strategy is None:
            return StrategyEvaluation(
                strategy_id="none",
                actions=(),
                confidence=0.0,
                explanation="No strategy enabled",
            )

        if snapshot.total_value_usd <= 0:
            return strategy.empty_evaluation(condition, "Portfolio has no value; nothing to allocate")

        if not opportunities:
            return strategy.empty_evaluation(
                condition, f"No yield opportunities available; {condition.summary or 'holding'}"
            )

        context = StrategyContext(
            snapshot=snapshot,
            condition=condition,
            opportunities=tuple(opportunities),
            assets=self.assets,
        )
        return strategy.run(context)
