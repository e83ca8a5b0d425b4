"""
Strategy Registry

Builds strategy instances from the policy.yaml `strategies` section, honours
enabled toggles, and picks the strategy for a market condition.

Selection:
- high/extreme volatility or bearish trend -> conservative
- everything else (moderate, neutral, low volatility) -> balanced
- a disabled preferred strategy falls back to the other enabled one
"""

from typing import Any, Dict, List, Optional, Type
import logging

from core.models import MarketCondition
from strategy.balanced import BalancedStrategy
from strategy.base_strategy import BaseStrategy
from strategy.conservative import ConservativeStrategy

logger = logging.getLogger(__name__)

CONSERVATIVE = "conservative"
BALANCED = "balanced"


class StrategyRegistry:

    STRATEGY_CLASSES: Dict[str, Type[BaseStrategy]] = {
        CONSERVATIVE: ConservativeStrategy,
        BALANCED: BalancedStrategy,
    }

    def __init__(self, strategies_config: Optional[Dict[str, Any]] = None):
        """
        Args:
            strategies_config: Mapping of strategy name -> parameters
                (defaults to both built-in strategies enabled)
        """
        self.strategies: Dict[str, BaseStrategy] = {}
        self._load_strategies(strategies_config or {CONSERVATIVE: {}, BALANCED: {}})

    def _load_strategies(self, strategies_config: Dict[str, Any]) -> None:
        enabled_count = 0
        for strategy_name, strategy_config in strategies_config.items():
            strategy_config = strategy_config or {}
            strategy_type = strategy_config.get("type", strategy_name)
            strategy_class = self.STRATEGY_CLASSES.get(strategy_type)
            if strategy_class is None:
                logger.warning(f"Strategy type '{strategy_type}' unknown, skipping '{strategy_name}'")
                continue

            strategy = strategy_class(name=strategy_name, config=strategy_config)
            self.strategies[strategy_name] = strategy
            if strategy.enabled:
                enabled_count += 1
                logger.info(f"✅ Loaded and ENABLED strategy: {strategy_name} ({strategy_type})")
            else:
                logger.info(f"⚪ Loaded but DISABLED strategy: {strategy_name} ({strategy_type})")

        logger.info(
            f"Strategy registry initialized: {len(self.strategies)} strategies loaded, "
            f"{enabled_count} enabled"
        )
        if enabled_count == 0:
            logger.warning("⚠️  No strategies enabled! The agent will not propose actions.")

    def get(self, name: str) -> Optional[BaseStrategy]:
        return self.strategies.get(name)

    @staticmethod
    def preferred_for(condition: MarketCondition) -> str:
        if condition.volatility_regime in ("high", "extreme") or condition.trend_direction == "bearish":
            return CONSERVATIVE
        return BALANCED

    def select(self, condition: MarketCondition) -> Optional[BaseStrategy]:
        preferred = self.preferred_for(condition)
        strategy = self.strategies.get(preferred)
        if strategy is not None and strategy.enabled:
            return strategy

        fallback = CONSERVATIVE if preferred == BALANCED else BALANCED
        strategy = self.strategies.get(fallback)
        if strategy is not None and strategy.enabled:
            logger.info(f"Strategy '{preferred}' disabled, falling back to '{fallback}'")
            return strategy
        return None

    def list_strategies(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": name,
                "type": type(strategy).__name__,
                "enabled": strategy.enabled,
                "description": strategy.description,
            }
            for name, strategy in self.strategies.items()
        ]
