"""
Conservative strategy: park idle base asset in the safest yield available.

Used in high/extreme volatility or bearish markets. Only staking and lending
opportunities below the risk ceiling are considered, and at most one stake
is proposed per cycle.
"""

import logging
from typing import Any, Dict, List

from core.models import MarketCondition, ProposedAction, YieldOpportunity, from_base_units
from strategy.base_strategy import (
    OPPORTUNITY_ACTIONS,
    BaseStrategy,
    StrategyContext,
    StrategyEvaluation,
)

logger = logging.getLogger(__name__)

SAFE_KINDS = ("staking", "lending")


class ConservativeStrategy(BaseStrategy):

    def __init__(self, name: str = "conservative", config: Dict[str, Any] = None):
        super().__init__(name, config or {})
        self.max_opportunity_risk = float(self.config.get("max_opportunity_risk", 30))
        self.idle_threshold_pct = float(self.config.get("idle_threshold_pct", 20))
        self.min_idle_units = int(self.config.get("min_idle_units", 100_000_000))
        self.max_trade_pct = float(self.config.get("max_trade_pct", 20))
        self.slippage_bps = int(self.config.get("slippage_bps", 10))
        self.stake_fraction = float(self.config.get("stake_fraction", 0.5))

    def score_confidence(self, condition: MarketCondition, actionable: bool) -> float:
        confidence = 50.0
        if condition.volatility_regime in ("high", "extreme"):
            confidence += 25
        if condition.trend_direction == "bearish":
            confidence += 15
        if actionable:
            confidence += 10
        return min(100.0, confidence)

    def safe_opportunities(self, opportunities) -> List[YieldOpportunity]:
        return [
            o for o in opportunities
            if o.kind in SAFE_KINDS and o.risk_score < self.max_opportunity_risk
        ]

    def evaluate(self, context: StrategyContext) -> StrategyEvaluation:
        snapshot = context.snapshot
        assets = context.assets
        base = assets.base_asset
        total = snapshot.total_value_usd

        safe = self.safe_opportunities(context.opportunities)
        risk_score = min(25.0, min(o.risk_score for o in safe)) if safe else 0.0
        candidates = [o for o in safe if o.input_asset == base]

        base_holding = snapshot.holding(base)
        base_pct = base_holding.value_usd / total * 100.0 if base_holding and total > 0 else 0.0

        actions: List[ProposedAction] = []
        explanation = ""
        if not candidates:
            explanation = f"No safe {base} yield below risk {self.max_opportunity_risk:.0f}; holding"
        elif base_holding is None or base_pct <= self.idle_threshold_pct \
                or base_holding.quantity <= self.min_idle_units:
            explanation = (
                f"Idle {base} at {base_pct:.1f}% is within the {self.idle_threshold_pct:.0f}% threshold; holding"
            )
        else:
            best = candidates[0]
            stake_units = int(base_holding.quantity * self.stake_fraction) - assets.reserve_units
            cap_units = int(total * self.max_trade_pct / 100.0 / base_holding.price_usd * (10 ** base_holding.decimals))
            spendable = base_holding.quantity - assets.reserve_units - assets.fee_units
            units = min(stake_units, cap_units, spendable)
            if units > 0:
                value = from_base_units(units, base_holding.decimals) * base_holding.price_usd
                actions.append(ProposedAction(
                    kind=OPPORTUNITY_ACTIONS[best.kind],
                    venue=best.venue,
                    input_asset=base,
                    output_asset=best.output_asset,
                    quantity=units,
                    value_usd=value,
                    max_slippage_bps=self.slippage_bps,
                    priority=1,
                    rationale=(
                        f"{base_pct:.1f}% idle {base} in {context.condition.volatility_regime} volatility; "
                        f"{best.venue} {best.kind} at {best.apy:.2f}% APY"
                    ),
                    description=f"{OPPORTUNITY_ACTIONS[best.kind]} {from_base_units(units, base_holding.decimals):.4f} {base}",
                    expected_value_change_usd=value * best.apy / 100.0 / 365.0,
                ))
                explanation = (
                    f"Protecting capital: moving idle {base} into {best.venue} {best.kind} "
                    f"({best.apy:.2f}% APY, risk {best.risk_score:.0f})"
                )
            else:
                explanation = f"Idle {base} too small after keeping the reserve; holding"

        return StrategyEvaluation(
            strategy_id=self.name,
            actions=tuple(actions),
            confidence=self.score_confidence(context.condition, bool(actions)),
            explanation=explanation,
            expected_yield=candidates[0].apy if candidates else 0.0,
            risk_score=risk_score,
        )
