"""
Yield optimizer.

Turns configured yield sources into YieldOpportunity objects with a
regime-adjusted risk score, and ranks them by risk-adjusted return.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from core.models import MarketCondition, YieldOpportunity

logger = logging.getLogger(__name__)

BASE_RISK = {
    "staking": 10.0,
    "lending": 25.0,
    "vault": 40.0,
    "lp": 60.0,
}

REGIME_RISK_FACTOR = {
    "low": 0.8,
    "moderate": 1.0,
    "high": 1.3,
    "extreme": 1.8,
}

DEFAULT_YIELD_SOURCES: List[Dict[str, Any]] = [
    {"venue": "marinade", "kind": "staking", "input_asset": "SOL", "output_asset": "mSOL",
     "apy": 7.2, "risk_multiplier": 0.3, "description": "Liquid SOL staking"},
    {"venue": "jupiter", "kind": "lending", "input_asset": "USDC", "output_asset": "jlUSDC",
     "apy": 5.5, "risk_multiplier": 0.5, "description": "USDC lending"},
    {"venue": "raydium", "kind": "lp", "input_asset": "SOL", "output_asset": "SOL-USDC-LP",
     "apy": 15.0, "risk_multiplier": 1.2, "description": "SOL/USDC liquidity pool"},
    {"venue": "kamino", "kind": "vault", "input_asset": "USDC", "output_asset": "kUSDC",
     "apy": 12.0, "risk_multiplier": 0.8, "description": "Automated USDC vault"},
]


def risk_label(score: float) -> str:
    if score < 20:
        return "Very Low"
    if score < 40:
        return "Low"
    if score < 60:
        return "Medium"
    if score < 80:
        return "High"
    return "Very High"


class YieldOptimizer:
    """Rank yield sources for a market condition."""

    def __init__(self, sources: Optional[List[Dict[str, Any]]] = None):
        raw = sources if sources is not None else DEFAULT_YIELD_SOURCES
        self._sources: List[Dict[str, Any]] = []
        for src in raw:
            if src.get("kind") not in BASE_RISK:
                logger.warning(f"Ignoring yield source {src.get('venue')}: unknown kind {src.get('kind')}")
                continue
            self._sources.append(dict(src))
        self._lock = threading.Lock()

    def update_yield_rates(self, rates: Dict[str, float]) -> None:
        """Refresh APYs; keys are venue ids."""
        with self._lock:
            for src in self._sources:
                if src["venue"] in rates:
                    src["apy"] = float(rates[src["venue"]])
        logger.debug(f"Yield rates updated: {rates}")

    def risk_score(self, source: Dict[str, Any], condition: MarketCondition) -> float:
        base = BASE_RISK[source["kind"]] * float(source.get("risk_multiplier", 1.0))
        factor = REGIME_RISK_FACTOR.get(condition.volatility_regime, 1.0)
        return round(max(0.0, min(100.0, base * factor)), 2)

    @staticmethod
    def score(opportunity: YieldOpportunity, condition: MarketCondition) -> float:
        risk = opportunity.risk_score
        penalty = risk * (condition.volatility_index / 50.0) * 0.1
        return (opportunity.apy - penalty) / (1 + risk / 100.0)

    def opportunities(self, condition: MarketCondition) -> List[YieldOpportunity]:
        with self._lock:
            sources = [dict(s) for s in self._sources]
        result = []
        for src in sources:
            tvl = float(src.get("tvl_usd", 0.0))
            if tvl < float(src.get("min_tvl_usd", 0.0)):
                continue
            risk = self.risk_score(src, condition)
            result.append(YieldOpportunity(
                venue=src["venue"],
                kind=src["kind"],
                input_asset=src["input_asset"],
                output_asset=src["output_asset"],
                apy=float(src["apy"]),
                risk_score=risk,
                tvl_usd=tvl,
                description=f"{src.get('description', src['venue'])} ({risk_label(risk)} risk)",
            ))
        return result

    def rank(self, condition: MarketCondition) -> List[YieldOpportunity]:
        """Opportunities best first."""
        return sorted(self.opportunities(condition), key=lambda o: self.score(o, condition), reverse=True)
