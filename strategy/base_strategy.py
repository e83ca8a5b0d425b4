"""
Base Strategy Interface

Strategies are pure: they receive an immutable StrategyContext and return a
StrategyEvaluation. They never talk to venues, the chain or the risk engine.

Architecture:
- AssetSettings: base asset, reserve and fee constants shared by strategies
- StrategyContext: snapshot + market condition + ranked opportunities
- StrategyEvaluation: proposed actions with confidence, risk and explanation
- BaseStrategy: abstract evaluate() plus run() with validation and error capture
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Tuple

from core.models import (
    ACTION_KINDS,
    MarketCondition,
    PortfolioSnapshot,
    ProposedAction,
    YieldOpportunity,
    to_base_units,
)

import logging

logger = logging.getLogger(__name__)

# opportunity kind -> action kind used to enter it
OPPORTUNITY_ACTIONS = {
    "staking": "stake",
    "lending": "lend",
    "lp": "provide_liquidity",
    "vault": "deposit",
}


@dataclass(frozen=True)
class AssetSettings:
    """Base asset constants, derived from policy.yaml (assets + risk sections)."""
    base_asset: str = "SOL"
    base_decimals: int = 9
    reserve_units: int = 50_000_000      # 0.05 SOL
    fee_units: int = 1_000_000           # 0.001 SOL
    decimals: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "AssetSettings":
        assets_cfg = policy.get("assets", {}) or {}
        risk_cfg = policy.get("risk", {}) or {}
        base_decimals = int(assets_cfg.get("base_decimals", 9))
        return cls(
            base_asset=assets_cfg.get("base", "SOL"),
            base_decimals=base_decimals,
            reserve_units=to_base_units(float(risk_cfg.get("min_reserve", 0.05)), base_decimals),
            fee_units=to_base_units(float(risk_cfg.get("estimated_fee", 0.001)), base_decimals),
            decimals=dict(assets_cfg.get("decimals", {}) or {}),
        )


@dataclass(frozen=True)
class StrategyContext:
    """
    Immutable inputs for one evaluation.

    Attributes:
        snapshot: Current portfolio
        condition: Oriented market condition
        opportunities: Yield opportunities ranked best first
        assets: Base asset / reserve settings
    """
    snapshot: PortfolioSnapshot
    condition: MarketCondition
    opportunities: Tuple[YieldOpportunity, ...] = ()
    assets: AssetSettings = field(default_factory=AssetSettings)

    def __post_init__(self):
        if not isinstance(self.snapshot, PortfolioSnapshot):
            raise TypeError(f"snapshot must be PortfolioSnapshot, got {type(self.snapshot)}")
        if not isinstance(self.condition, MarketCondition):
            raise TypeError(f"condition must be MarketCondition, got {type(self.condition)}")
        if not isinstance(self.opportunities, tuple):
            object.__setattr__(self, "opportunities", tuple(self.opportunities))


@dataclass(frozen=True)
class StrategyEvaluation:
    strategy_id: str
    actions: Tuple[ProposedAction, ...]
    confidence: float
    explanation: str
    expected_yield: float = 0.0
    risk_score: float = 0.0

    def __post_init__(self):
        if not isinstance(self.actions, tuple):
            object.__setattr__(self, "actions", tuple(self.actions))


class BaseStrategy(ABC):
    """
    Abstract base class for portfolio strategies.

    All strategies MUST:
    1. Implement evaluate() and score_confidence()
    2. Return a StrategyEvaluation (possibly with zero actions)
    3. NOT perform I/O or mutate shared state
    """

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        Args:
            name: Strategy identifier ("conservative", "balanced")
            config: Strategy parameters from policy.yaml strategies section
        """
        self.name = name
        self.config = config or {}
        self._enabled = bool(self.config.get("enabled", True))
        self._description = self.config.get("description", "")

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def description(self) -> str:
        return self._description

    @abstractmethod
    def evaluate(self, context: StrategyContext) -> StrategyEvaluation:
        """Propose actions for the context. Must not raise for ordinary market input."""

    @abstractmethod
    def score_confidence(self, condition: MarketCondition, actionable: bool) -> float:
        """Confidence (0-100) this strategy has under the given condition."""

    def empty_evaluation(self, condition: MarketCondition, explanation: str) -> StrategyEvaluation:
        return StrategyEvaluation(
            strategy_id=self.name,
            actions=(),
            confidence=self.score_confidence(condition, actionable=False),
            explanation=explanation,
        )

    def validate_actions(self, actions: List[ProposedAction], confidence: float) -> List[ProposedAction]:
        """Drop malformed actions and stamp the evaluation confidence and priority order."""
        validated = []
        for action in actions:
            if action.kind not in ACTION_KINDS or action.quantity <= 0 or action.value_usd <= 0:
                logger.warning(f"[{self.name}] Dropping malformed action {action.kind} {action.quantity}")
                continue
            validated.append(action)
        validated.sort(key=lambda a: a.priority)
        return [
            replace(action, priority=idx, confidence=confidence)
            for idx, action in enumerate(validated, start=1)
        ]

    def run(self, context: StrategyContext) -> StrategyEvaluation:
        """Evaluate with validation; errors are logged and yield an empty evaluation."""
        try:
            evaluation = self.evaluate(context)
            actions = self.validate_actions(list(evaluation.actions), evaluation.confidence)
            logger.info(
                f"[{self.name}] {len(actions)} action(s), confidence={evaluation.confidence:.0f}, "
                f"risk={evaluation.risk_score:.0f}"
            )
            return replace(evaluation, actions=tuple(actions))
        except Exception as e:
            logger.error(f"[{self.name}] Error evaluating strategy: {e}", exc_info=True)
            return self.empty_evaluation(context.condition, f"strategy error: {e}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}', enabled={self._enabled})"
